"""
Explicit dotenv loading: never in prod, `.env.local` overrides `.env`,
`STOPGUARD_ENV_FILE` loads last.
"""
import os

import pytest

from stopguard.config.dotenv_loader import ENV_FILE_VAR, load_dotenv_files

VAR = "STOPGUARD_DOTENV_VALUE"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv(ENV_FILE_VAR, raising=False)
    # Registered so teardown removes what load_dotenv sets
    monkeypatch.setenv(VAR, "placeholder")
    monkeypatch.delenv(VAR)


def test_prod_loads_nothing(tmp_path, monkeypatch):
    (tmp_path / ".env").write_text(f"{VAR}=from_env\n")
    monkeypatch.setenv("ENVIRONMENT", "prod")

    assert load_dotenv_files(repo_root=tmp_path) == []
    assert VAR not in os.environ


def test_unset_environment_counts_as_prod(tmp_path, monkeypatch):
    (tmp_path / ".env").write_text(f"{VAR}=from_env\n")
    monkeypatch.delenv("ENVIRONMENT", raising=False)

    assert load_dotenv_files(repo_root=tmp_path) == []


def test_dev_loads_env_then_local_override(tmp_path, monkeypatch):
    (tmp_path / ".env").write_text(f"{VAR}=from_env\n")
    (tmp_path / ".env.local").write_text(f"{VAR}=from_local\n")
    monkeypatch.setenv("ENVIRONMENT", "dev")

    loaded = load_dotenv_files(repo_root=tmp_path)

    assert loaded == [tmp_path / ".env", tmp_path / ".env.local"]
    assert os.environ[VAR] == "from_local"


def test_named_env_file_loads_last_even_in_prod(tmp_path, monkeypatch):
    account = tmp_path / "account.env"
    account.write_text(f"{VAR}=from_account\n")
    (tmp_path / ".env").write_text(f"{VAR}=from_env\n")
    monkeypatch.setenv("ENVIRONMENT", "prod")
    monkeypatch.setenv(ENV_FILE_VAR, str(account))

    assert load_dotenv_files(repo_root=tmp_path) == [account]
    assert os.environ[VAR] == "from_account"


def test_missing_named_env_file_is_an_error(tmp_path, monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "dev")
    monkeypatch.setenv(ENV_FILE_VAR, str(tmp_path / "nope.env"))

    with pytest.raises(FileNotFoundError, match=ENV_FILE_VAR):
        load_dotenv_files(repo_root=tmp_path)
