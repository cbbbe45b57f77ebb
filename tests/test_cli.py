"""Tests for lockbox.cli — command line interface, end to end against a temp vault."""

import json
import sys

import pytest

from lockbox.cli import main

PASSWORD = "correct horse battery"


@pytest.fixture(autouse=True)
def fake_keychain(monkeypatch, keychain):
    """Keep the CLI away from the real OS keychain."""
    monkeypatch.setattr("lockbox.engine.SystemKeychain", lambda: keychain)
    return keychain


@pytest.fixture
def initialized(capsys):
    assert main(["init", "--password", PASSWORD]) == 0
    assert main(["project", "create", "api"]) == 0
    assert main(["env", "create", "dev"]) == 0
    capsys.readouterr()


def _out(capsys):
    return capsys.readouterr().out


class TestCli:
    def test_version(self, capsys):
        rc = main(["version"])
        assert rc == 0
        out = _out(capsys)
        assert "lockbox" in out
        assert "0.1.0" in out

    def test_version_flag(self, capsys):
        assert main(["--version"]) == 0
        assert "lockbox" in _out(capsys)

    def test_no_args(self, capsys):
        assert main([]) == 0

    def test_status_uninitialized_creates_nothing(self, capsys, lockbox_home):
        assert main(["status"]) == 0
        assert "Not initialized" in _out(capsys)
        assert not (lockbox_home / "vault.db").exists()


class TestInitUnlock:
    def test_init(self, capsys, lockbox_home):
        assert main(["init", "--password", PASSWORD]) == 0
        assert "Vault initialized" in _out(capsys)
        assert (lockbox_home / "vault.db").exists()

        assert main(["status"]) == 0
        out = _out(capsys)
        assert "Initialized" in out
        assert "Unlocked" in out

    def test_init_twice(self, capsys):
        main(["init", "--password", PASSWORD])
        assert main(["init", "--password", PASSWORD]) == 1
        assert "already initialized" in _out(capsys)

    def test_init_short_password(self, capsys):
        assert main(["init", "--password", "short"]) == 1
        assert "at least 8" in _out(capsys)

    def test_init_password_from_env(self, capsys, monkeypatch):
        monkeypatch.setenv("LOCKBOX_PASSWORD", PASSWORD)
        assert main(["init"]) == 0

    def test_lock_unlock(self, capsys, initialized):
        assert main(["lock"]) == 0
        assert main(["get", "X", "-e", "dev"]) == 1
        assert "locked" in _out(capsys)

        assert main(["unlock", "--password", "wrong-password"]) == 1
        assert "invalid password" in _out(capsys)

        assert main(["unlock", "--password", PASSWORD]) == 0
        assert "Vault unlocked" in _out(capsys)
        assert main(["unlock", "--password", PASSWORD]) == 0
        assert "already unlocked" in _out(capsys)

    def test_unlock_uninitialized(self, capsys):
        assert main(["unlock", "--password", PASSWORD]) == 1
        assert "not initialized" in _out(capsys)

    def test_unlock_prompts(self, capsys, initialized, monkeypatch):
        main(["lock"])
        monkeypatch.setattr("lockbox.cli.getpass.getpass", lambda prompt="": PASSWORD)
        assert main(["unlock"]) == 0


class TestKeychainCommands:
    def test_enable_and_unlock(self, capsys, initialized, fake_keychain):
        assert main(["keychain", "enable", "--password", PASSWORD]) == 0
        assert fake_keychain.blob is not None
        main(["lock"])
        capsys.readouterr()

        assert main(["unlock"]) == 0
        assert "via keychain" in _out(capsys)

    def test_status(self, capsys, initialized):
        assert main(["keychain", "status"]) == 0
        out = _out(capsys)
        assert "Keychain available: True" in out
        assert "Keychain enabled: False" in out

    def test_fallback_to_password(self, capsys, initialized, fake_keychain, monkeypatch):
        main(["keychain", "enable", "--password", PASSWORD])
        main(["lock"])
        fake_keychain.blob = None
        monkeypatch.setenv("LOCKBOX_PASSWORD", PASSWORD)
        capsys.readouterr()

        assert main(["unlock"]) == 0
        out = _out(capsys)
        assert "falling back to password" in out
        assert "Vault unlocked" in out

    def test_disable(self, capsys, initialized, fake_keychain):
        main(["keychain", "enable", "--password", PASSWORD])
        assert main(["keychain", "disable"]) == 0
        assert fake_keychain.blob is None


class TestProjectsAndEnvs:
    def test_project_list_marks_active(self, capsys, initialized):
        main(["project", "create", "web", "-d", "Frontend"])
        main(["project", "use", "api"])
        capsys.readouterr()
        assert main(["project", "list"]) == 0
        out = _out(capsys)
        assert "* api" in out
        assert "  web - Frontend" in out

    def test_project_delete(self, capsys, initialized):
        assert main(["project", "delete", "api", "--force"]) == 0
        assert main(["env", "list"]) == 1
        assert "no active project" in _out(capsys)

    def test_project_flag(self, capsys, initialized):
        main(["project", "create", "web"])
        main(["--project", "api", "set", "A", "1", "-e", "dev"])
        capsys.readouterr()
        assert main(["--project", "api", "get", "A", "-e", "dev"]) == 0
        assert _out(capsys).strip() == "1"

    def test_env_list_and_branch(self, capsys, initialized):
        main(["set", "A", "1", "-e", "dev"])
        assert main(["env", "branch", "dev", "feature"]) == 0
        assert "1 secrets inherited" in _out(capsys)
        main(["set", "B", "2", "-e", "feature"])
        capsys.readouterr()

        assert main(["env", "list"]) == 0
        out = _out(capsys)
        assert "dev (1 secrets)" in out
        assert "feature (1 local, 1 inherited) -> inherits from 'dev'" in out

    def test_env_delete_parent_refused(self, capsys, initialized):
        main(["env", "branch", "dev", "feature"])
        capsys.readouterr()
        assert main(["env", "delete", "dev", "--force"]) == 1
        assert "child environments (feature)" in _out(capsys)
        assert main(["env", "delete", "feature", "--force"]) == 0


class TestSecretCommands:
    def test_set_get(self, capsys, initialized):
        assert main(["set", "API_KEY", "sk-123", "-e", "dev"]) == 0
        assert "Created API_KEY in api/dev" in _out(capsys)
        assert main(["set", "API_KEY", "sk-456", "-e", "dev"]) == 0
        assert "Updated API_KEY" in _out(capsys)
        assert main(["get", "API_KEY", "-e", "dev"]) == 0
        assert _out(capsys).strip() == "sk-456"

    def test_set_invalid_key(self, capsys, initialized):
        assert main(["set", "bad-key", "v", "-e", "dev"]) == 1
        assert "invalid key name" in _out(capsys)

    def test_set_from_stdin(self, capsys, initialized, monkeypatch):
        import io

        monkeypatch.setattr(sys, "stdin", io.StringIO("from-stdin\n"))
        assert main(["set", "A", "-e", "dev", "--stdin"]) == 0
        capsys.readouterr()
        main(["get", "A", "-e", "dev"])
        assert _out(capsys).strip() == "from-stdin"

    def test_get_resolve(self, capsys, initialized):
        main(["set", "HOST", "db", "-e", "dev"])
        main(["set", "URL", "pg://${HOST}/app", "-e", "dev"])
        capsys.readouterr()
        main(["get", "URL", "-e", "dev"])
        assert _out(capsys).strip() == "pg://${HOST}/app"
        main(["get", "URL", "-e", "dev", "--resolve"])
        assert _out(capsys).strip() == "pg://db/app"

    def test_list(self, capsys, initialized):
        main(["set", "A", "1", "-e", "dev"])
        main(["env", "branch", "dev", "feature"])
        capsys.readouterr()
        assert main(["list", "-e", "feature", "--show-values"]) == 0
        assert "A = 1 [inherited from dev]" in _out(capsys)

    def test_list_empty(self, capsys, initialized):
        assert main(["list", "-e", "dev"]) == 0
        assert "No secrets in api/dev" in _out(capsys)

    def test_history_restore_delete(self, capsys, initialized):
        main(["set", "A", "one", "-e", "dev"])
        main(["set", "A", "two", "-e", "dev"])
        capsys.readouterr()

        assert main(["history", "A", "-e", "dev", "--show-values"]) == 0
        out = _out(capsys)
        assert "[~] v2" in out
        assert "[+] v1" in out
        assert "Value: one" in out

        assert main(["restore", "A", "-e", "dev", "--version", "v1"]) == 0
        capsys.readouterr()
        main(["get", "A", "-e", "dev"])
        assert _out(capsys).strip() == "one"

        assert main(["delete", "A", "-e", "dev", "--force"]) == 0
        assert "Deleted A from api/dev" in _out(capsys)
        assert main(["get", "A", "-e", "dev"]) == 1

    def test_restore_deletion_refused(self, capsys, initialized):
        main(["set", "A", "one", "-e", "dev"])
        main(["delete", "A", "-e", "dev", "--force"])
        capsys.readouterr()
        assert main(["restore", "A", "-e", "dev", "-v", "2"]) == 1
        assert "deletion" in _out(capsys)

    def test_delete_unknown_env_never_prompts(self, capsys, initialized, monkeypatch):
        def no_prompt(prompt=""):
            raise AssertionError("prompted for a missing environment")

        monkeypatch.setattr("builtins.input", no_prompt)
        assert main(["delete", "A", "-e", "nope"]) == 1
        assert "environment 'nope' not found" in _out(capsys)

    def test_delete_cancelled(self, capsys, initialized, monkeypatch):
        main(["set", "A", "one", "-e", "dev"])
        monkeypatch.setattr("builtins.input", lambda prompt="": "n")
        assert main(["delete", "A", "-e", "dev"]) == 0
        assert "Cancelled" in _out(capsys)


class TestExportImportRun:
    def test_export_env(self, capsys, initialized):
        main(["set", "A", "has space", "-e", "dev"])
        main(["set", "B", "plain", "-e", "dev"])
        capsys.readouterr()
        assert main(["export", "-e", "dev"]) == 0
        assert _out(capsys) == 'A="has space"\nB=plain\n'

    def test_export_json_resolved(self, capsys, initialized):
        main(["set", "HOST", "db", "-e", "dev"])
        main(["set", "URL", "pg://${HOST}", "-e", "dev"])
        capsys.readouterr()
        assert main(["export", "-e", "dev", "--format", "json", "--resolve"]) == 0
        assert json.loads(_out(capsys)) == {"HOST": "db", "URL": "pg://db"}

    def test_import(self, capsys, initialized, tmp_path):
        path = tmp_path / ".env"
        path.write_text("# local\nDB_HOST=localhost\nDB_PASS=\"p w\"\nbad-key=x\n")
        assert main(["import", str(path), "-e", "dev"]) == 0
        out = _out(capsys)
        assert "Skipping invalid key: bad-key" in out
        assert "2 created, 0 updated" in out
        main(["get", "DB_PASS", "-e", "dev"])
        assert _out(capsys).strip() == "p w"

    def test_import_missing_file(self, capsys, initialized, tmp_path):
        assert main(["import", str(tmp_path / "nope.env"), "-e", "dev"]) == 1
        assert "Error" in _out(capsys)

    def test_run(self, capsys, initialized, tmp_path):
        main(["set", "HOST", "db", "-e", "dev"])
        main(["set", "URL", "pg://${HOST}", "-e", "dev"])
        out = tmp_path / "child.txt"
        code = f"import os; open({str(out)!r}, 'w').write(os.environ['URL'])"
        assert main(["run", "-e", "dev", "--", sys.executable, "-c", code]) == 0
        assert out.read_text() == "pg://db"

    def test_run_exit_code(self, capsys, initialized):
        assert main(["run", "-e", "dev", "--", sys.executable, "-c", "raise SystemExit(3)"]) == 3

    def test_run_no_command(self, capsys, initialized):
        assert main(["run", "-e", "dev"]) == 1
        assert "no command specified" in _out(capsys)


class TestAuditCommand:
    def test_audit(self, capsys, initialized):
        main(["set", "A", "1", "-e", "dev"])
        main(["get", "A", "-e", "dev"])
        capsys.readouterr()
        assert main(["audit"]) == 0
        out = _out(capsys)
        assert "read" in out
        assert "create" in out

    def test_audit_stats(self, capsys, initialized):
        main(["set", "A", "1", "-e", "dev"])
        capsys.readouterr()
        assert main(["audit", "--stats"]) == 0
        assert "Total events: 1" in _out(capsys)
