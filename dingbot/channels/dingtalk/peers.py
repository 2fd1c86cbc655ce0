"""Case-preserving registry of DingTalk peer ids."""


class PeerIdRegistry:
    """
    Maps lowercased peer ids back to their original casing.

    Conversation ids are base64-derived and case-sensitive, while session keys
    are often lowercased by the host; outbound sends resolve through here.
    """

    def __init__(self) -> None:
        self._ids: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._ids)

    def register(self, original_id: str) -> None:
        if not original_id:
            return
        self._ids[original_id.lower()] = original_id

    def resolve(self, peer_id: str) -> str:
        if not peer_id:
            return peer_id
        return self._ids.get(peer_id.lower(), peer_id)

    def clear(self) -> None:
        self._ids.clear()
