"""
Tests for the spmirror command-line interface.

Commands run through `main()` against a temporary repository. Network, CAB
expansion and SoftPaq extraction are replaced with the shared fakes.
"""

import json

import pytest
from helpers import FakeCabExpander, ZipExtractor

from spmirror.cli import main
from spmirror.config import EngineConfig
from spmirror.engine.interfaces import OsSpec
from spmirror.engine.state import RepositoryStore

pytestmark = [pytest.mark.user_interface]


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "spmirror.yaml"
    EngineConfig(cache_dir=str(tmp_path / "cache"), current_os="win10:2009").save(str(path))
    return path


@pytest.fixture
def repo(tmp_path):
    return tmp_path / "repo"


@pytest.fixture
def offline(mocker, fake_session):
    """Route every session the CLI builds to the FakeSession and use fake archive tools."""
    mocker.patch("spmirror.engine.downloader.build_session", return_value=fake_session)
    mocker.patch("spmirror.engine.catalog.SubprocessCabExpander", FakeCabExpander)
    mocker.patch("spmirror.engine.driverpack.SoftPaqExtractor", ZipExtractor)
    return fake_session


@pytest.fixture
def cli(repo, config_file):
    def _run(*args):
        return main(["--repo", str(repo), "--config", str(config_file), *args])

    return _run


@pytest.fixture
def initialized(cli, repo):
    assert cli("init") == 0
    return RepositoryStore(repo)


def test_no_command_prints_help(capsys):
    assert main([]) == 0
    assert "usage" in capsys.readouterr().out.lower()


class TestRepositoryCommands:
    def test_init_and_info(self, cli, initialized, capsys):
        assert initialized.is_initialized
        capsys.readouterr()

        assert cli("info") == 0

        assert '"Filters": []' in capsys.readouterr().out

    def test_commands_need_an_initialized_repository(self, cli):
        assert cli("info") == 1

    def test_add_filter(self, cli, initialized):
        assert (
            cli(
                "add-filter",
                "--platform",
                "83B2",
                "--os",
                "win10",
                "--category",
                "Driver",
                "--category",
                "BIOS",
                "--prefer-ltsc",
            )
            == 0
        )

        (flt,) = initialized.load().filters
        assert flt.platform == "83b2"
        assert flt.os == OsSpec("win10", "2009")
        assert flt.categories == ("BIOS", "Driver")
        assert flt.prefer_ltsc

    def test_add_filter_rejects_bad_platform(self, cli, initialized):
        assert cli("add-filter", "--platform", "83b") == 1
        assert initialized.load().filters == []

    def test_remove_filter_asks_first(self, cli, initialized, monkeypatch):
        cli("add-filter", "--platform", "83b2", "--os", "win10:2009")
        monkeypatch.setattr("builtins.input", lambda _prompt: "n")

        assert cli("remove-filter", "--platform", "83b2") == 0
        assert len(initialized.load().filters) == 1

        monkeypatch.setattr("builtins.input", lambda _prompt: "y")
        assert cli("remove-filter", "--platform", "83b2") == 0
        assert initialized.load().filters == []

    def test_remove_filter_without_confirmation(self, cli, initialized, mocker):
        cli("add-filter", "--platform", "83b2", "--os", "win10:2009")
        cli("add-filter", "--platform", "83b2", "--os", "win11:22H2")
        prompt = mocker.patch("builtins.input")

        assert cli("remove-filter", "--platform", "83b2", "--os", "win11:*", "--yes") == 0

        prompt.assert_not_called()
        assert [str(f.os) for f in initialized.load().filters] == ["win10:2009"]

    def test_set_setting(self, cli, initialized):
        assert cli("set-setting", "OnRemoteFileNotFound", "LogAndContinue") == 0
        assert initialized.load().settings.on_remote_file_not_found == "LogAndContinue"
        assert cli("set-setting", "OnRemoteFileNotFound", "Sometimes") == 1

    def test_notifications(self, cli, initialized, capsys):
        assert cli("notify", "add", "ops@example.com") == 1

        assert cli("notify", "server", "smtp.example.com", "--port", "587", "--tls") == 0
        assert cli("notify", "add", "ops@example.com", "dev@example.com") == 0
        assert cli("notify", "remove", "dev@example.com") == 0
        capsys.readouterr()
        assert cli("notify", "show") == 0

        out = capsys.readouterr().out
        assert "smtp.example.com" in out
        assert initialized.recipients() == ["ops@example.com"]

        assert cli("notify", "clear") == 0
        assert initialized.load().notifications is None


class TestSyncCommands:
    def test_sync_cleanup_and_report(self, cli, initialized, offline, published_softpaqs, tmp_path):
        cli("add-filter", "--platform", "83b2", "--os", "win10:2009")
        (initialized.repo_path / "sp1.exe").write_bytes(b"orphan")

        assert cli("sync") == 0

        assert (initialized.repo_path / "sp100001.exe").is_file()
        assert (initialized.meta_dir / "Contents.csv").is_file()
        assert "Starting sync" in initialized.activity_log.read_text(encoding="utf-8")

        assert cli("cleanup") == 0
        assert not (initialized.repo_path / "sp1.exe").exists()

        report = tmp_path / "report.json"
        assert cli("report", "--format", "JSON", "--output", str(report)) == 0
        rows = json.loads(report.read_text(encoding="utf-8"))
        assert [row["id"] for row in rows] == ["sp100001", "sp100002", "sp100003"]

    def test_sync_failure_exit_code(self, cli, initialized, offline):
        cli("add-filter", "--platform", "83b2", "--os", "win10:2009")
        assert cli("sync") == 1


class TestCatalogCommands:
    def test_query(self, cli, offline, published_softpaqs, capsys):
        assert cli("query", "--platform", "83b2", "--os", "win10:2009", "--category", "BIOS") == 0
        out = capsys.readouterr().out
        assert '"id": "sp100003"' in out
        assert "sp100001" not in out

    def test_query_needs_an_os(self, cli, offline):
        assert cli("query", "--platform", "83b2") == 1

    def test_driverpack(self, cli, offline, published_softpaqs, tmp_path, capsys):
        output = tmp_path / "packs"

        assert (
            cli(
                "driverpack",
                "--platform",
                "83b2",
                "--os",
                "win10:2009",
                "--output",
                str(output),
                "--unselect",
                "BIOS",
            )
            == 0
        )

        pack = output / "DP83b2"
        assert str(pack) in capsys.readouterr().out
        assert (pack / "sp100001" / "src" / "drivers" / "sp100001.inf").is_file()
        assert not (pack / "sp100003").exists()

    def test_driverpack_latest_excludes_explicit_os(self, cli, offline, tmp_path):
        assert (
            cli(
                "driverpack",
                "--platform",
                "83b2",
                "--latest",
                "--os",
                "win10:2009",
                "--output",
                str(tmp_path),
            )
            == 1
        )


def test_invalid_configuration_file(repo, tmp_path):
    config = tmp_path / "broken.yaml"
    config.write_text("REQUEST_TIMEOUT: [1, 2]\n", encoding="utf-8")
    assert main(["--repo", str(repo), "--config", str(config), "init"]) == 1
