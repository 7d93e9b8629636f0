# ABOUTME: Tests for config loading, merging and saving
# ABOUTME: Covers JSON and TOML files, project/user precedence, ${VAR} expansion and backups
import json
import warnings

import pytest
import tomli

from mcplink.config import (
    add_server,
    descriptor_from_dict,
    descriptor_to_dict,
    get_project_config_path,
    get_user_config_path,
    load_config,
    load_descriptors,
    read_config_file,
    remove_server,
    save_descriptors,
)
from mcplink.errors import ConfigError
from mcplink.models import ServerDescriptor


def write_json(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))
    return path


class TestConfigPaths:

    def test_user_config_path(self, isolated_home):
        assert get_user_config_path() == isolated_home / ".mcplink" / "mcp.json"

    def test_project_config_path_defaults_to_cwd(self, tmp_path):
        assert get_project_config_path() == tmp_path / "project" / ".mcplink" / "mcp.json"
        assert get_project_config_path(tmp_path) == tmp_path / ".mcplink" / "mcp.json"


class TestLoadConfig:
    """Tests for load_config with the accepted file shapes."""

    def test_mcp_servers_key(self, tmp_path):
        path = write_json(tmp_path / "mcp.json", {
            "mcpServers": {
                "filesystem": {
                    "command": "npx",
                    "args": ["-y", "@modelcontextprotocol/server-filesystem", "/tmp"],
                },
                "github": {
                    "command": "gh-mcp",
                    "env": {"GITHUB_TOKEN": "abc"},
                    "enabled": False,
                },
            }
        })

        config = load_config(path)

        assert list(config.servers) == ["filesystem", "github"]
        assert config.servers["filesystem"].args == ("-y", "@modelcontextprotocol/server-filesystem", "/tmp")
        assert config.servers["github"].env == {"GITHUB_TOKEN": "abc"}
        assert config.servers["github"].enabled is False

    def test_servers_list(self, tmp_path):
        """Test the list form where each entry carries its own name."""
        path = write_json(tmp_path / "mcp.json", {
            "servers": [
                {"name": "one", "command": "node", "args": ["one.js"]},
                {"name": "two", "command": "node"},
            ]
        })

        config = load_config(path)

        assert list(config.servers) == ["one", "two"]
        assert config.servers["one"].args == ("one.js",)

    def test_toml_file(self, tmp_path):
        path = tmp_path / "servers.toml"
        path.write_text(
            '[mcp_servers.fs]\n'
            'command = "npx"\n'
            'args = ["-y", "server-filesystem"]\n'
            '\n'
            '[mcp_servers.fs.env]\n'
            'ROOT = "/data"\n'
        )

        config = load_config(path)

        assert config.servers["fs"] == ServerDescriptor(
            name="fs", command="npx", args=["-y", "server-filesystem"], env={"ROOT": "/data"}
        )

    def test_no_server_section(self, tmp_path):
        path = write_json(tmp_path / "mcp.json", {"other": 1})
        assert load_config(path).servers == {}

    def test_env_vars_expanded(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MCPLINK_TEST_TOKEN", "tok_123")
        monkeypatch.setenv("MCPLINK_TEST_DIR", "/srv/data")
        path = write_json(tmp_path / "mcp.json", {
            "mcpServers": {
                "api": {
                    "command": "server",
                    "args": ["--root", "${MCPLINK_TEST_DIR}"],
                    "env": {"TOKEN": "${MCPLINK_TEST_TOKEN}"},
                }
            }
        })

        server = load_config(path).servers["api"]

        assert server.args == ("--root", "/srv/data")
        assert server.env == {"TOKEN": "tok_123"}

    def test_missing_env_var_kept_with_warning(self, tmp_path, monkeypatch):
        monkeypatch.delenv("MCPLINK_TEST_MISSING", raising=False)
        path = write_json(tmp_path / "mcp.json", {
            "mcpServers": {"api": {"command": "server", "env": {"TOKEN": "${MCPLINK_TEST_MISSING}"}}}
        })

        with warnings.catch_warnings(record=True) as w:
            warnings.simplefilter("always")
            server = load_config(path).servers["api"]

        assert server.env == {"TOKEN": "${MCPLINK_TEST_MISSING}"}
        assert any("MCPLINK_TEST_MISSING" in str(warning.message) for warning in w)

    def test_file_not_found(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.json")


class TestInvalidConfig:
    """Malformed files and entries surface as ConfigError."""

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "mcp.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError, match="Invalid JSON"):
            read_config_file(path)

    def test_invalid_toml(self, tmp_path):
        path = tmp_path / "servers.toml"
        path.write_text("[mcp_servers\n")
        with pytest.raises(ConfigError, match="Invalid TOML"):
            read_config_file(path)

    def test_top_level_not_object(self, tmp_path):
        path = tmp_path / "mcp.json"
        path.write_text("[]")
        with pytest.raises(ConfigError, match="must be an object"):
            read_config_file(path)

    @pytest.mark.parametrize("settings,message", [
        ({"args": []}, "missing required 'command'"),
        ({"command": ""}, "missing required 'command'"),
        ({"command": "x", "args": "not-a-list"}, "'args' must be a list"),
        ({"command": "x", "env": ["A=1"]}, "'env' must be an object"),
        ({"command": "x", "enabled": "yes"}, "'enabled' must be true or false"),
        ({"type": "http", "url": "https://example.com/mcp"}, "Only 'stdio' is supported"),
    ])
    def test_bad_entries(self, settings, message):
        with pytest.raises(ConfigError, match=message):
            descriptor_from_dict("broken", settings)

    def test_list_entry_without_name(self, tmp_path):
        path = write_json(tmp_path / "mcp.json", {"servers": [{"command": "node"}]})
        with pytest.raises(ConfigError, match="needs a 'name'"):
            load_config(path)

    def test_server_section_wrong_type(self, tmp_path):
        path = write_json(tmp_path / "mcp.json", {"mcpServers": "nope"})
        with pytest.raises(ConfigError):
            load_config(path)

    def test_config_error_is_value_error(self):
        assert issubclass(ConfigError, ValueError)


class TestLoadDescriptors:
    """Tests for merging project and user config."""

    def test_project_overrides_user(self, tmp_path, isolated_home):
        write_json(get_user_config_path(), {
            "mcpServers": {
                "shared": {"command": "user-cmd"},
                "user-only": {"command": "user-tool"},
            }
        })
        write_json(get_project_config_path(), {
            "mcpServers": {
                "shared": {"command": "project-cmd"},
                "project-only": {"command": "project-tool"},
            }
        })

        descriptors = load_descriptors()

        assert [server.name for server in descriptors] == ["shared", "project-only", "user-only"]
        assert descriptors[0].command == "project-cmd"

    def test_no_config_files(self):
        assert load_descriptors() == []

    def test_broken_user_config_is_skipped(self, tmp_path):
        user_path = get_user_config_path()
        user_path.parent.mkdir(parents=True)
        user_path.write_text("{broken")
        write_json(get_project_config_path(), {"mcpServers": {"a": {"command": "a"}}})

        assert [server.name for server in load_descriptors()] == ["a"]

    def test_broken_project_config_raises(self):
        path = get_project_config_path()
        path.parent.mkdir(parents=True)
        path.write_text("{broken")

        with pytest.raises(ConfigError):
            load_descriptors()

    def test_explicit_paths(self, tmp_path):
        project = write_json(tmp_path / "p.json", {"mcpServers": {"a": {"command": "a"}}})
        user = write_json(tmp_path / "u.json", {"mcpServers": {"b": {"command": "b"}}})

        names = [server.name for server in load_descriptors(project_path=project, user_path=user)]

        assert names == ["a", "b"]


class TestSaveDescriptors:
    """Tests for writing config files."""

    def test_json_round_trip(self, tmp_path):
        path = tmp_path / "out" / "mcp.json"
        servers = [
            ServerDescriptor(name="fs", command="npx", args=["-y", "fs"]),
            ServerDescriptor(name="off", command="node", env={"A": "1"}, enabled=False),
        ]

        save_descriptors(path, servers, backup_dir=tmp_path / "backups")

        data = json.loads(path.read_text())
        assert data == {
            "mcpServers": {
                "fs": {"command": "npx", "args": ["-y", "fs"]},
                "off": {"command": "node", "env": {"A": "1"}, "enabled": False},
            }
        }
        assert list(load_config(path).servers.values()) == servers

    def test_toml_output(self, tmp_path):
        path = tmp_path / "servers.toml"
        save_descriptors(path, [ServerDescriptor(name="fs", command="npx", args=["-y"])])

        with open(path, "rb") as f:
            data = tomli.load(f)
        assert data == {"mcp_servers": {"fs": {"command": "npx", "args": ["-y"]}}}

    def test_existing_file_backed_up(self, tmp_path):
        path = write_json(tmp_path / "mcp.json", {"mcpServers": {"old": {"command": "old"}}})
        backup_dir = tmp_path / "backups"

        save_descriptors(path, [ServerDescriptor(name="new", command="new")], backup_dir=backup_dir)

        backups = list(backup_dir.glob("mcp_*.json"))
        assert len(backups) == 1
        assert "old" in json.loads(backups[0].read_text())["mcpServers"]
        assert list(json.loads(path.read_text())["mcpServers"]) == ["new"]

    def test_other_top_level_keys_survive(self, tmp_path):
        path = write_json(tmp_path / "mcp.json", {
            "$schema": "https://example.com/mcp.schema.json",
            "mcpServers": {"old": {"command": "old"}},
            "settings": {"theme": "dark"},
        })

        save_descriptors(path, [ServerDescriptor(name="new", command="new")], backup_dir=tmp_path / "b")

        assert json.loads(path.read_text()) == {
            "$schema": "https://example.com/mcp.schema.json",
            "mcpServers": {"new": {"command": "new"}},
            "settings": {"theme": "dark"},
        }

    def test_toml_other_tables_survive(self, tmp_path):
        path = tmp_path / "servers.toml"
        path.write_text(
            '[editor]\nfont = "mono"\n\n'
            '[mcp_servers.old]\ncommand = "old"\n'
        )

        save_descriptors(path, [ServerDescriptor(name="fs", command="npx")], backup_dir=tmp_path / "b")

        with open(path, "rb") as f:
            data = tomli.load(f)
        assert data == {"editor": {"font": "mono"}, "mcp_servers": {"fs": {"command": "npx"}}}

    def test_unparseable_existing_file_left_alone(self, tmp_path):
        path = tmp_path / "mcp.json"
        path.write_text("{nope")

        with pytest.raises(ConfigError):
            save_descriptors(path, [ServerDescriptor(name="fs", command="npx")], backup_dir=tmp_path / "b")
        assert path.read_text() == "{nope"

    def test_new_file_not_backed_up(self, tmp_path):
        backup_dir = tmp_path / "backups"
        save_descriptors(tmp_path / "mcp.json", [], backup_dir=backup_dir)
        assert not backup_dir.exists()

    def test_descriptor_to_dict_omits_defaults(self):
        assert descriptor_to_dict(ServerDescriptor(name="x", command="run")) == {"command": "run"}


class TestAddRemoveServer:
    """Tests for single-entry edits."""

    def test_add_to_new_file(self, tmp_path):
        path = tmp_path / ".mcplink" / "mcp.json"

        replaced = add_server(path, ServerDescriptor(name="fs", command="npx"), backup_dir=tmp_path / "b")

        assert replaced is False
        assert json.loads(path.read_text()) == {"mcpServers": {"fs": {"command": "npx"}}}

    def test_add_keeps_unexpanded_references(self, tmp_path, monkeypatch):
        """Test that editing one entry doesn't bake ${VAR} values into the others."""
        monkeypatch.setenv("MCPLINK_TEST_TOKEN", "secret")
        path = write_json(tmp_path / "mcp.json", {
            "mcpServers": {"gh": {"command": "gh-mcp", "env": {"TOKEN": "${MCPLINK_TEST_TOKEN}"}}}
        })

        add_server(path, ServerDescriptor(name="fs", command="npx"), backup_dir=tmp_path / "b")

        data = json.loads(path.read_text())
        assert data["mcpServers"]["gh"]["env"]["TOKEN"] == "${MCPLINK_TEST_TOKEN}"
        assert list(data["mcpServers"]) == ["gh", "fs"]

    def test_add_replaces_existing(self, tmp_path):
        path = write_json(tmp_path / "mcp.json", {"mcpServers": {"fs": {"command": "old"}}})

        replaced = add_server(path, ServerDescriptor(name="fs", command="new"), backup_dir=tmp_path / "b")

        assert replaced is True
        assert load_config(path).servers["fs"].command == "new"

    def test_remove(self, tmp_path):
        path = write_json(tmp_path / "mcp.json", {
            "mcpServers": {"a": {"command": "a"}, "b": {"command": "b"}}
        })

        assert remove_server(path, "a", backup_dir=tmp_path / "b") is True
        assert list(load_config(path).servers) == ["b"]

    def test_edits_keep_servers_key_and_list_form(self, tmp_path):
        """Test that a list-form 'servers' table stays a list under 'servers'."""
        path = write_json(tmp_path / "mcp.json", {
            "version": 2,
            "servers": [{"name": "a", "command": "a"}],
        })

        add_server(path, ServerDescriptor(name="b", command="b"), backup_dir=tmp_path / "b")
        remove_server(path, "a", backup_dir=tmp_path / "b")

        assert json.loads(path.read_text()) == {
            "version": 2,
            "servers": [{"command": "b", "name": "b"}],
        }

    def test_remove_unknown(self, tmp_path):
        path = write_json(tmp_path / "mcp.json", {"mcpServers": {"a": {"command": "a"}}})
        assert remove_server(path, "zzz") is False

    def test_remove_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            remove_server(tmp_path / "missing.json", "a")
