import os

import pytest
import uvicorn
from click.testing import CliRunner

from calmirror.cli import cli
from calmirror.server import CONFIG_ENV_VAR


@pytest.fixture
def env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("GOOGLE_CLIENT_ID", "client-id-for-cli-tests")
    monkeypatch.setenv("GOOGLE_CLIENT_SECRET", "client-secret-for-cli-tests")
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    return tmp_path


def test_config_create_writes_example(env):
    target = env / "example.env"

    result = CliRunner().invoke(cli, ["config", "create", "--path", str(target)])

    assert result.exit_code == 0
    content = target.read_text()
    assert "GOOGLE_REDIRECT_URI=" in content
    assert "TOKEN_ENCRYPTION_KEY" in content


def test_config_validate(env):
    result = CliRunner().invoke(cli, ["config", "validate"])

    assert result.exit_code == 0
    assert "All required configuration fields are present" in result.output


def test_sync_unknown_user_fails(env):
    result = CliRunner().invoke(cli, ["sync", "--user-id", "nobody"])

    assert result.exit_code == 1
    assert (env / "data" / "calmirror.db").exists()


def test_status_of_unknown_user(env):
    result = CliRunner().invoke(cli, ["status", "--user-id", "nobody"])

    assert result.exit_code == 0
    assert "Mirrored events" in result.output


def test_auth_url_contains_redirect(env):
    result = CliRunner().invoke(cli, ["auth-url", "--user-id", "user-1"])

    assert result.exit_code == 0
    assert "accounts.google.com" in result.output


def test_serve_hands_config_file_to_server(env, monkeypatch):
    config_file = env / "served.env"
    config_file.write_text("APP_NAME=calmirror-served\n")
    monkeypatch.setenv(CONFIG_ENV_VAR, "")
    started = {}
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: started.update(app=app, **kwargs))

    result = CliRunner().invoke(cli, ["--config", str(config_file), "serve", "--port", "9090"])

    assert result.exit_code == 0
    assert started["app"] == "calmirror.server:app"
    assert started["port"] == 9090
    assert os.environ[CONFIG_ENV_VAR] == str(config_file)
