from __future__ import annotations

import os
from pathlib import Path
from typing import Iterator

import pytest

from ctxsync import snapshot
from ctxsync.errors import SnapshotError
from ctxsync.extract import ExtractorRegistry
from ctxsync.ignore import DEFAULT_IGNORE_PATTERNS
from ctxsync.schema import SnapshotNode
from ctxsync.snapshot import EXCLUDED_NOTE, SnapshotBuilder


def _file_paths(node: SnapshotNode, prefix: str = "") -> Iterator[str]:
    for name, child in (node.children or {}).items():
        path = f"{prefix}{name}"
        if child.is_directory:
            yield from _file_paths(child, f"{path}/")
        else:
            yield path


def test_main_go_and_ignored_directory_shape(sample_repo) -> None:
    node = SnapshotBuilder().build(sample_repo.root, ["ignored"])

    assert node.is_directory
    assert set(node.children) == {"main.go", "ignored"}

    main = node.children["main.go"]
    assert not main.is_directory
    assert main.identifiers == ["foo", "main"]
    assert main.children is None

    ignored = node.children["ignored"]
    assert ignored.is_directory
    assert ignored.excluded
    assert ignored.children is None
    assert ignored.identifiers is None
    assert ignored.to_wire() == {"isDirectory": True, "excluded": True}


def test_every_included_file_appears_once_and_is_reachable(sample_repo) -> None:
    sample_repo.write("src/app/util.py", "def helper(value):\n    return value\n")
    sample_repo.write("src/app/notes.md", "# notes\n")
    sample_repo.write("src/build.log", "noise\n")

    node = SnapshotBuilder().build(sample_repo.root, ["*.log"])

    files = list(_file_paths(node))
    assert len(files) == len(set(files))
    assert set(files) >= {"main.go", "ignored/secret.go", "src/app/util.py", "src/app/notes.md"}
    assert node.find("src/app/util.py").identifiers == ["helper", "value"]
    assert node.find("src/app/notes.md").identifiers == []
    assert node.find("src/build.log").excluded
    assert node.find("src/missing.py") is None


def test_empty_directory_is_kept(sample_repo) -> None:
    (sample_repo.root / "empty").mkdir()

    node = SnapshotBuilder().build(sample_repo.root)

    assert node.children["empty"] == SnapshotNode.directory()


def test_unreadable_root_raises_snapshot_error(tmp_path: Path) -> None:
    with pytest.raises(SnapshotError):
        SnapshotBuilder().build(tmp_path / "does-not-exist")


def test_build_context_keys_by_root_and_notes_exclusions(sample_repo) -> None:
    builder = SnapshotBuilder()

    context = builder.build_context(sample_repo.root, ["ignored"])
    assert list(context.snapshot) == [sample_repo.root.as_posix()]
    assert context.notes == [EXCLUDED_NOTE]
    assert context.file_contents == {}

    plain = builder.build_context(sample_repo.root)
    assert plain.notes == []
    assert plain.snapshot[sample_repo.root.as_posix()].find("ignored/secret.go").identifiers == [
        "hidden",
        "ignored",
    ]


def test_unreadable_subdirectory_becomes_empty_directory(sample_repo, monkeypatch: pytest.MonkeyPatch) -> None:
    locked = sample_repo.write("locked/inner.go", "package locked\n").parent
    list_dir = snapshot._list_dir

    def guarded(path: Path):
        if path == locked:
            raise PermissionError(13, "Permission denied", str(path))
        return list_dir(path)

    monkeypatch.setattr(snapshot, "_list_dir", guarded)

    node = SnapshotBuilder().build(sample_repo.root)

    assert node.children["locked"] == SnapshotNode.directory()
    assert node.find("main.go").identifiers == ["foo", "main"]


@pytest.mark.skipif(os.name != "posix" or os.geteuid() == 0, reason="needs a non-root POSIX user")
def test_chmod_locked_directory_is_kept_empty(sample_repo) -> None:
    locked = sample_repo.write("locked/inner.go", "package locked\n").parent
    locked.chmod(0)
    try:
        node = SnapshotBuilder().build(sample_repo.root)
    finally:
        locked.chmod(0o755)

    assert node.children["locked"] == SnapshotNode.directory()


def test_symlinked_directories_are_not_followed(sample_repo) -> None:
    (sample_repo.root / "loop").symlink_to(sample_repo.root, target_is_directory=True)
    (sample_repo.root / "alias.go").symlink_to(sample_repo.root / "ignored", target_is_directory=True)

    node = SnapshotBuilder().build(sample_repo.root)

    for name in ("loop", "alias.go"):
        link = node.children[name]
        assert not link.is_directory
        assert link.children is None
        assert link.identifiers == []
    assert [path for path in _file_paths(node) if path.endswith("secret.go")] == ["ignored/secret.go"]


def test_unreadable_file_yields_empty_identifiers(sample_repo) -> None:
    (sample_repo.root / "dangling.go").symlink_to(sample_repo.root / "gone.go")

    node = SnapshotBuilder().build(sample_repo.root)

    assert node.children["dangling.go"].identifiers == []


class FailingRegistry(ExtractorRegistry):
    def extract(self, path, source, *, logger=None):
        raise ValueError(f"cannot parse {path}")


def test_parse_failure_yields_empty_identifiers(sample_repo) -> None:
    node = SnapshotBuilder(FailingRegistry()).build(sample_repo.root)

    assert node.children["main.go"].identifiers == []
    assert node.find("ignored/secret.go").identifiers == []


def test_default_patterns_keep_files_sharing_a_prefix(sample_repo) -> None:
    for name in ("binary.go", "distance.go", "pkgutil.go", "logs_handler.go"):
        sample_repo.write(name, "package main\n\nfunc helper() {}\n")
    sample_repo.write("bin/tool.go", "package main\n")

    node = SnapshotBuilder().build(sample_repo.root, DEFAULT_IGNORE_PATTERNS)

    for name in ("binary.go", "distance.go", "pkgutil.go", "logs_handler.go"):
        assert node.children[name].identifiers == ["helper", "main"], name
    assert node.children["bin"].excluded
