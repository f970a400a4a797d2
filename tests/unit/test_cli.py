"""Unit tests for CLI modules."""

import json

import pytest

from converge import __version__
from converge.cli import playbook, vault
from converge.engine.errors import ParseError
from converge.engine.vault import VAULT_HEADER


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    """Keep a stray converge.yml or CONVERGE_CONFIG out of the tests."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("CONVERGE_CONFIG", raising=False)


@pytest.fixture
def inventory(tmp_path):
    path = tmp_path / "hosts.ini"
    path.write_text("localhost ansible_connection=local\n")
    return str(path)


def write(tmp_path, name, content):
    path = tmp_path / name
    path.write_text(content)
    return str(path)


class TestPlaybookCLI:
    """Tests for converge-playbook."""

    def test_create_parser(self):
        parser = playbook.create_parser()
        assert parser.prog == "converge-playbook"

    def test_version_string(self):
        assert __version__ in playbook.get_version_string()

    def test_version_flag_exits(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            playbook.main(["--version"])
        assert excinfo.value.code == 0
        assert __version__ in capsys.readouterr().out

    def test_no_playbook_shows_help(self, capsys):
        assert playbook.main([]) == 0
        assert "usage:" in capsys.readouterr().out

    def test_inventory_required(self, tmp_path, capsys):
        site = write(tmp_path, "site.yml", "- hosts: all\n  tasks: []\n")
        assert playbook.main([site]) == 3
        assert "Inventory" in capsys.readouterr().err

    def test_json_run(self, tmp_path, inventory, capsys):
        site = write(tmp_path, "site.yml", """
- hosts: all
  tasks:
    - debug:
        msg: "hello {{ who }}"
""")
        assert playbook.main(["-i", inventory, site, "--json", "-e", "who=world"]) == 0

        data = json.loads(capsys.readouterr().out)
        assert data["tasks"][0]["msg"] == "hello world"
        assert data["stats"]["localhost"]["ok"] == 1

    def test_failing_host(self, tmp_path, inventory, capsys):
        site = write(tmp_path, "site.yml", "- hosts: all\n  tasks:\n    - fail:\n        msg: nope\n")
        assert playbook.main(["-i", inventory, site]) == 2
        assert "fatal: [localhost] => nope" in capsys.readouterr().out

    def test_parse_error(self, tmp_path, inventory, capsys):
        site = write(tmp_path, "site.yml", "- hosts: all\n  tasks: [\n")
        assert playbook.main(["-i", inventory, site]) == 3
        assert "ERROR!" in capsys.readouterr().err

    def test_unsupported_feature(self, tmp_path, inventory):
        site = write(tmp_path, "site.yml", "- import_playbook: other.yml\n")
        assert playbook.main(["-i", inventory, site]) == 4

    def test_tags_limit_and_config(self, tmp_path, inventory, capsys):
        write(tmp_path, "converge.yml", "defaults:\n  forks: 2\n")
        site = write(tmp_path, "site.yml", """
- hosts: all
  tasks:
    - debug: {msg: one}
      tags: [first]
    - debug: {msg: two}
      tags: [second]
""")
        code = playbook.main(["-i", inventory, site, "--json", "-t", "first,other", "--limit", "localhost"])
        assert code == 0
        data = json.loads(capsys.readouterr().out)
        assert [t["msg"] for t in data["tasks"]] == ["one"]

    def test_invalid_forks(self, tmp_path, inventory, capsys):
        site = write(tmp_path, "site.yml", "- hosts: all\n  tasks: []\n")
        assert playbook.main(["-i", inventory, site, "--forks", "0"]) == 3
        assert "forks" in capsys.readouterr().err


class TestExtraVars:

    def test_key_value_pairs(self):
        assert playbook._parse_extra_vars(["a=1 b=text", "c=[1,2]"]) == {"a": 1, "b": "text", "c": [1, 2]}

    def test_json(self):
        assert playbook._parse_extra_vars(['{"a": {"b": true}}']) == {"a": {"b": True}}

    def test_file(self, tmp_path):
        path = write(tmp_path, "vars.yml", "region: eu\nreplicas: 3\n")
        assert playbook._parse_extra_vars([f"@{path}"]) == {"region": "eu", "replicas": 3}

    def test_later_values_win(self):
        assert playbook._parse_extra_vars(["a=1", "a=2"]) == {"a": 2}

    @pytest.mark.parametrize("value", ["novalue", "=x", "{not json", "[1, 2]", "@missing.yml"])
    def test_invalid(self, value):
        with pytest.raises(ParseError):
            playbook._parse_extra_vars([value])


class TestVaultCLI:
    """Tests for converge-vault."""

    @pytest.fixture
    def password_file(self, tmp_path):
        return write(tmp_path, "vault-pass", "s3cret\n")

    def test_create_parser(self):
        assert vault.create_parser().prog == "converge-vault"

    def test_encrypt_view_decrypt(self, tmp_path, password_file, capsys):
        secrets = write(tmp_path, "secrets.yml", "token: abc\n")

        assert vault.main(["encrypt", secrets, "--vault-password-file", password_file]) == 0
        content = (tmp_path / "secrets.yml").read_text()
        assert content.startswith(VAULT_HEADER)
        assert "abc" not in content

        capsys.readouterr()
        assert vault.main(["view", secrets, "--vault-password-file", password_file]) == 0
        assert capsys.readouterr().out == "token: abc\n"

        plain = tmp_path / "plain.yml"
        assert vault.main(["decrypt", secrets, "--vault-password-file", password_file, "--output", str(plain)]) == 0
        assert plain.read_text() == "token: abc\n"
        assert (tmp_path / "secrets.yml").read_text() == content

    def test_vault_id(self, tmp_path, password_file, capsys):
        secrets = write(tmp_path, "secrets.yml", "token: abc\n")
        args = ["encrypt", secrets, "--vault-password-file", password_file, "--vault-id", "prod", "--output", "-"]
        assert vault.main(args) == 0
        assert capsys.readouterr().out.startswith(f"{VAULT_HEADER};1.2;AES256;prod")

    def test_encrypt_twice_is_an_error(self, tmp_path, password_file, capsys):
        secrets = write(tmp_path, "secrets.yml", "token: abc\n")
        vault.main(["encrypt", secrets, "--vault-password-file", password_file])
        assert vault.main(["encrypt", secrets, "--vault-password-file", password_file]) == 1
        assert "already encrypted" in capsys.readouterr().err

    def test_view_plain_file(self, tmp_path, password_file, capsys):
        plain = write(tmp_path, "plain.yml", "a: 1\n")
        assert vault.main(["view", plain, "--vault-password-file", password_file]) == 1
        assert "not vault encrypted" in capsys.readouterr().err

    def test_wrong_password(self, tmp_path, password_file, capsys):
        secrets = write(tmp_path, "secrets.yml", "token: abc\n")
        vault.main(["encrypt", secrets, "--vault-password-file", password_file])
        wrong = write(tmp_path, "wrong-pass", "nope\n")
        assert vault.main(["view", secrets, "--vault-password-file", wrong]) == 1

    def test_missing_file(self, tmp_path, password_file, capsys):
        assert vault.main(["view", str(tmp_path / "nope.yml"), "--vault-password-file", password_file]) == 1
        assert "File not found" in capsys.readouterr().err
