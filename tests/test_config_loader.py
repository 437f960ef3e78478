"""Config file loading: camelCase on disk, snake_case in code, env overrides."""

import json

import pytest

from nekobot.config.loader import convert_keys, convert_to_camel, load_config, save_config
from nekobot.config.schema import Config, McpServerConfig
from nekobot.errors import PersistenceError


def test_convert_keys_preserves_user_maps() -> None:
    data = {
        "provider": {"apiKey": "k", "extraHeaders": {"X-Org-Id": "acme"}},
        "tools": {
            "mcpServers": {
                "myServer": {"command": "srv", "env": {"API_TOKEN": "t"}},
            },
        },
    }
    out = convert_keys(data)
    assert out["provider"] == {"api_key": "k", "extra_headers": {"X-Org-Id": "acme"}}
    assert out["tools"]["mcp_servers"]["myServer"] == {"command": "srv", "env": {"API_TOKEN": "t"}}
    assert convert_to_camel(out) == data


def test_missing_file_gives_defaults(tmp_path) -> None:
    config = load_config(tmp_path / "nope.json")
    assert config.cron.tick_seconds == 15.0
    assert config.memory.core_cap_chars == 2000


def test_save_and_load(tmp_path) -> None:
    path = tmp_path / "config.json"
    config = Config()
    config.agent.model = "my-model"
    config.memory.core_cap_chars = 500
    config.tools.mcp_servers = {"fs": McpServerConfig(command="mcp-fs", args=["--root", "/tmp"])}
    save_config(config, path)

    raw = json.loads(path.read_text())
    assert raw["memory"]["coreCapChars"] == 500
    assert raw["tools"]["mcpServers"]["fs"]["command"] == "mcp-fs"

    loaded = load_config(path)
    assert loaded.agent.model == "my-model"
    assert loaded.memory.core_cap_chars == 500
    assert loaded.tools.mcp_servers["fs"].args == ["--root", "/tmp"]


@pytest.mark.parametrize(
    "content",
    ["{not json", json.dumps({"memory": {"coreCapChars": 5}})],
)
def test_invalid_config_raises(tmp_path, content) -> None:
    path = tmp_path / "config.json"
    path.write_text(content)
    with pytest.raises(PersistenceError):
        load_config(path)


def test_env_override(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("NEKOBOT_CRON__TICK_SECONDS", "5")
    monkeypatch.setenv("NEKOBOT_PROVIDER__API_KEY", "from-env")
    config = load_config(tmp_path / "missing.json")
    assert config.cron.tick_seconds == 5
    assert config.provider.api_key == "from-env"
