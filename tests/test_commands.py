import shutil
from pathlib import Path
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from dingbot.cli.commands import app
from dingbot.config.schema import Config

runner = CliRunner()


@pytest.fixture
def mock_paths():
    """Mock config paths for test isolation."""
    with patch("dingbot.config.loader.get_config_path") as mock_cp, \
         patch("dingbot.config.loader.save_config") as mock_sc, \
         patch("dingbot.config.loader.load_config") as mock_lc, \
         patch("dingbot.config.loader.get_data_dir") as mock_dd:

        base_dir = Path("./test_onboard_data")
        if base_dir.exists():
            shutil.rmtree(base_dir)
        base_dir.mkdir()

        config_file = base_dir / "config.json"

        mock_cp.return_value = config_file
        mock_dd.return_value = base_dir
        mock_lc.return_value = Config()
        mock_sc.side_effect = lambda config: config_file.write_text("{}")

        yield config_file, mock_lc

        if base_dir.exists():
            shutil.rmtree(base_dir)


def test_onboard_fresh_install(mock_paths):
    """No existing config should create from scratch."""
    config_file, _ = mock_paths

    result = runner.invoke(app, ["onboard"])

    assert result.exit_code == 0
    assert "Created config" in result.stdout
    assert "dingbot is ready" in result.stdout
    assert config_file.exists()


def test_onboard_existing_config_refresh(mock_paths):
    """Config exists, user declines overwrite should refresh (load-merge-save)."""
    config_file, mock_lc = mock_paths
    config_file.write_text('{"existing": true}')

    result = runner.invoke(app, ["onboard"], input="n\n")

    assert result.exit_code == 0
    assert "Config already exists" in result.stdout
    assert "existing values preserved" in result.stdout
    mock_lc.assert_called_once()


def test_onboard_existing_config_overwrite(mock_paths):
    """Config exists, user confirms overwrite should reset to defaults."""
    config_file, mock_lc = mock_paths
    config_file.write_text('{"existing": true}')

    result = runner.invoke(app, ["onboard"], input="y\n")

    assert result.exit_code == 0
    assert "Config reset to defaults" in result.stdout
    mock_lc.assert_not_called()


def test_status_lists_accounts(mock_paths):
    _, mock_lc = mock_paths
    mock_lc.return_value = Config.model_validate({
        "channels": {"dingtalk": {"accounts": {
            "ops": {"name": "Ops Bot", "clientId": "dingabcdefghijk", "clientSecret": "s"},
            "sales": {"enabled": False, "messageType": "card"},
        }}},
    })

    result = runner.invoke(app, ["status"])

    assert result.exit_code == 0
    assert "Ops Bot" in result.stdout
    assert "dingabcdef..." in result.stdout
    assert "sales" in result.stdout
    assert "not configured" in result.stdout


def test_probe_unconfigured_exits_nonzero(mock_paths):
    result = runner.invoke(app, ["probe"])

    assert result.exit_code == 1
    assert "Not configured" in result.stdout


def test_send_requires_text_or_media(mock_paths):
    result = runner.invoke(app, ["send", "cidGroup"])

    assert result.exit_code == 1
    assert "provide TEXT or --media" in result.stdout


def test_send_unconfigured_reports_failure(mock_paths):
    result = runner.invoke(app, ["send", "cidGroup", "hello"])

    assert result.exit_code == 1
    assert "DingTalk not configured" in result.stdout


def test_gateway_without_accounts_exits(mock_paths):
    result = runner.invoke(app, ["gateway"])

    assert result.exit_code == 1
    assert "No DingTalk account configured" in result.stdout
