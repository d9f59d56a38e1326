import json
import zipfile

import pytest

from spmirror.engine.files import (
    ExclusiveLock,
    SubprocessCabExpander,
    atomic_write,
    atomic_write_json,
    copy_tree,
    create_zip,
    safe_join,
    safe_remove,
)
from spmirror.exceptions import ExtractionError

pytestmark = [pytest.mark.unit]


class TestAtomicWrite:
    def test_writes_json(self, tmp_path):
        target = tmp_path / "nested" / "state.json"
        atomic_write_json(target, {"Filters": []})
        assert json.loads(target.read_text(encoding="utf-8")) == {"Filters": []}
        assert [p.name for p in target.parent.iterdir()] == ["state.json"]

    def test_failed_write_keeps_previous_content(self, tmp_path):
        target = tmp_path / "state.json"
        target.write_text("previous", encoding="utf-8")

        def explode(_f):
            raise OSError("disk full")

        with pytest.raises(OSError):
            atomic_write(target, explode)

        assert target.read_text(encoding="utf-8") == "previous"
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]


class TestPathSafety:
    def test_safe_join_accepts_backslashes(self, tmp_path):
        assert safe_join(tmp_path, "src\\drivers") == (tmp_path / "src" / "drivers").resolve()

    def test_safe_join_refuses_escape(self, tmp_path):
        with pytest.raises(ValueError):
            safe_join(tmp_path, "..\\..\\etc")

    def test_safe_remove_refuses_outside_base(self, tmp_path):
        base = tmp_path / "repo"
        base.mkdir()
        outside = tmp_path / "keep.txt"
        outside.write_text("x")

        assert not safe_remove(outside, base)
        assert outside.exists()

    def test_safe_remove_inside_base(self, tmp_path):
        victim = tmp_path / "sp1.exe"
        victim.write_bytes(b"x")
        assert safe_remove(victim, tmp_path)
        assert not victim.exists()


class TestExclusiveLock:
    def test_second_holder_is_refused(self, tmp_path):
        target = tmp_path / "sp1.exe"
        first = ExclusiveLock(target)
        second = ExclusiveLock(target)

        assert first.acquire()
        assert not second.acquire()
        first.release()
        assert second.acquire()
        second.release()
        assert not (tmp_path / "sp1.exe.lock").exists()

    def test_context_manager_releases(self, tmp_path):
        with ExclusiveLock(tmp_path / "sp1.exe") as lock:
            assert lock.acquire()
            assert lock.held
        assert not lock.held


def test_create_zip_uses_relative_names(tmp_path):
    source = tmp_path / "pack"
    (source / "sp1" / "src").mkdir(parents=True)
    (source / "sp1" / "src" / "a.inf").write_text("[Version]")
    (source / "manifest.json").write_text("{}")

    create_zip(source, tmp_path / "pack.zip")

    with zipfile.ZipFile(tmp_path / "pack.zip") as zf:
        assert sorted(zf.namelist()) == ["manifest.json", "sp1/src/a.inf"]


def test_copy_tree_merges_directories(tmp_path):
    (tmp_path / "a" / "x").mkdir(parents=True)
    (tmp_path / "a" / "x" / "1.inf").write_text("1")
    (tmp_path / "dest" / "x").mkdir(parents=True)
    (tmp_path / "dest" / "x" / "2.inf").write_text("2")

    copy_tree(tmp_path / "a", tmp_path / "dest")
    copy_tree(tmp_path / "a" / "x" / "1.inf", tmp_path / "single")

    assert sorted(p.name for p in (tmp_path / "dest" / "x").iterdir()) == ["1.inf", "2.inf"]
    assert (tmp_path / "single" / "1.inf").is_file()


def test_missing_archive_tool(tmp_path, mocker):
    mocker.patch("spmirror.engine.files.is_windows", return_value=False)
    mocker.patch("spmirror.engine.files.shutil.which", return_value=None)

    with pytest.raises(ExtractionError) as exc_info:
        SubprocessCabExpander().expand(tmp_path / "x.cab", tmp_path / "out")

    assert "cabextract" in str(exc_info.value)


def test_archive_tool_failure(tmp_path, mocker):
    mocker.patch("spmirror.engine.files.is_windows", return_value=False)
    mocker.patch("spmirror.engine.files.shutil.which", return_value="/usr/bin/cabextract")
    run = mocker.patch("spmirror.engine.files.subprocess.run")
    run.return_value.returncode = 1
    run.return_value.stderr = "corrupt cabinet"
    run.return_value.stdout = ""

    with pytest.raises(ExtractionError) as exc_info:
        SubprocessCabExpander().expand(tmp_path / "x.cab", tmp_path / "out")

    assert "corrupt cabinet" in str(exc_info.value)
    assert run.call_args.args[0][:2] == ["cabextract", "-q"]
