"""Tests for threadgraph.config: threadgraph.toml, .env and environment overrides."""

import pytest

from threadgraph.config import init_config, load_config


class TestLoadConfig:
    def test_defaults_without_config_file(self, tmp_path):
        cfg = load_config(tmp_path)
        assert cfg.root == tmp_path
        assert cfg.memory_dir == tmp_path / ".threadgraph" / "memory"
        assert cfg.server.host == "127.0.0.1"
        assert cfg.server.port == 3000

    def test_toml_values(self, tmp_path):
        (tmp_path / "threadgraph.toml").write_text(
            '[memory]\ndir = "data/mem"\n\n[server]\nhost = "0.0.0.0"\nport = 8080\n'
        )
        cfg = load_config(tmp_path)
        assert cfg.memory_dir == tmp_path / "data" / "mem"
        assert cfg.server.host == "0.0.0.0"
        assert cfg.server.port == 8080

    def test_env_file_overrides_toml(self, tmp_path):
        (tmp_path / "threadgraph.toml").write_text('[memory]\ndir = "from-toml"\n')
        (tmp_path / ".env").write_text('# comment\nMEMORY_DIR_PATH="from-dotenv"\nPORT=4000\n')
        cfg = load_config(tmp_path)
        assert cfg.memory_dir == tmp_path / "from-dotenv"
        assert cfg.server.port == 4000

    def test_process_env_overrides_everything(self, tmp_path, monkeypatch):
        (tmp_path / ".env").write_text("HOST=10.0.0.1\n")
        absolute = tmp_path / "elsewhere"
        monkeypatch.setenv("MEMORY_DIR_PATH", str(absolute))
        monkeypatch.setenv("HOST", "192.168.1.5")
        cfg = load_config(tmp_path)
        assert cfg.memory_dir == absolute
        assert cfg.server.host == "192.168.1.5"

    def test_bad_port(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PORT", "http")
        with pytest.raises(ValueError, match="PORT"):
            load_config(tmp_path)

    def test_port_out_of_range(self, tmp_path):
        (tmp_path / "threadgraph.toml").write_text("[server]\nport = 70000\n")
        with pytest.raises(ValueError, match="out of range"):
            load_config(tmp_path)

    def test_root_found_walking_up(self, tmp_path):
        (tmp_path / "threadgraph.toml").write_text("")
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert load_config(nested).root == tmp_path

    def test_ensure_dirs(self, tmp_path):
        cfg = load_config(tmp_path)
        cfg.ensure_dirs()
        assert cfg.memory_dir.is_dir()
        cfg.ensure_dirs()


class TestInitConfig:
    def test_writes_loadable_file(self, tmp_path):
        path = init_config(tmp_path)
        assert path.name == "threadgraph.toml"
        cfg = load_config(tmp_path)
        assert cfg.server.port == 3000

    def test_refuses_to_overwrite(self, tmp_path):
        init_config(tmp_path)
        with pytest.raises(FileExistsError):
            init_config(tmp_path)
