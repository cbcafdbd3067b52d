from __future__ import annotations

import io

import pytest
from fastapi import UploadFile

from agent_console.chat.files import (
    ReadOnlyZone,
    SessionFileError,
    SessionFileNotFound,
    SessionFileService,
    SessionFileTooLarge,
    is_session_path_safe,
    resolve_session_file_path,
)
from agent_console.services.workspace import LocalWorkspaceFiles, WorkspacePathError

AGENT = "main"
SESSION = "sess-1"


@pytest.fixture
def workspace(tmp_path) -> LocalWorkspaceFiles:
    return LocalWorkspaceFiles(tmp_path / "workspace")


@pytest.fixture
def service(workspace) -> SessionFileService:
    return SessionFileService(workspace, max_upload_bytes=64)


def _input_dir(workspace: LocalWorkspaceFiles):
    return workspace.root / AGENT / "sessions" / SESSION / "input"


@pytest.mark.parametrize(
    ("path", "safe"),
    [
        ("notes.txt", True),
        ("docs/a.png", True),
        ("", False),
        ("../secret", False),
        ("a/../../b", False),
        ("/etc/passwd", False),
        ("a\x00b", False),
    ],
)
def test_is_session_path_safe(path: str, safe: bool) -> None:
    assert is_session_path_safe(path) is safe


def test_resolve_session_file_path() -> None:
    assert resolve_session_file_path(AGENT, SESSION, "input") == "/workspace/main/sessions/sess-1/input/"
    assert (
        resolve_session_file_path(AGENT, SESSION, "output", "charts/a.png")
        == "/workspace/main/sessions/sess-1/output/charts/a.png"
    )
    with pytest.raises(SessionFileError):
        resolve_session_file_path(AGENT, SESSION, "secrets", "a")
    with pytest.raises(WorkspacePathError):
        resolve_session_file_path(AGENT, SESSION, "input", "../../other/input/a")


@pytest.mark.anyio
async def test_upload_list_and_download(service, workspace) -> None:
    upload = UploadFile(filename="notes.txt", file=io.BytesIO(b"hello"))

    entry = await service.upload(AGENT, SESSION, upload, "docs")

    assert entry == {"name": "notes.txt", "path": "docs/notes.txt", "type": "file", "size": 5}
    assert (_input_dir(workspace) / "docs" / "notes.txt").read_bytes() == b"hello"

    root = await service.list_files(AGENT, SESSION, "input")
    assert (root["zone"], root["dir"]) == ("input", "")
    assert [(f["name"], f["path"], f["type"]) for f in root["files"]] == [
        ("docs", "docs", "directory")
    ]
    nested = await service.list_files(AGENT, SESSION, "input", "docs")
    assert [(f["path"], f["size"]) for f in nested["files"]] == [("docs/notes.txt", 5)]

    assert await service.read_file(AGENT, SESSION, "input", "docs/notes.txt") == b"hello"


@pytest.mark.anyio
async def test_missing_folder_lists_empty(service) -> None:
    listing = await service.list_files(AGENT, SESSION, "output")
    assert listing == {"files": [], "zone": "output", "dir": ""}


@pytest.mark.anyio
async def test_output_zone_is_readable_but_not_deletable(service, workspace) -> None:
    output = workspace.root / AGENT / "sessions" / SESSION / "output"
    output.mkdir(parents=True)
    (output / "chart.png").write_bytes(b"PNG")

    assert await service.read_file(AGENT, SESSION, "output", "chart.png") == b"PNG"
    with pytest.raises(ReadOnlyZone):
        await service.delete_file(AGENT, SESSION, "output", "chart.png")
    assert (output / "chart.png").exists()


@pytest.mark.anyio
async def test_missing_files_raise_not_found(service) -> None:
    with pytest.raises(SessionFileNotFound):
        await service.read_file(AGENT, SESSION, "input", "nope.txt")
    with pytest.raises(SessionFileNotFound):
        await service.delete_file(AGENT, SESSION, "input", "nope.txt")


@pytest.mark.anyio
async def test_mkdir_move_and_delete(service, workspace) -> None:
    input_dir = _input_dir(workspace)
    input_dir.mkdir(parents=True)
    (input_dir / "a.txt").write_bytes(b"a")

    await service.make_directory(AGENT, SESSION, "archive")
    await service.move(AGENT, SESSION, "a.txt", "archive/a.txt")

    assert not (input_dir / "a.txt").exists()
    assert (input_dir / "archive" / "a.txt").read_bytes() == b"a"

    with pytest.raises(SessionFileError):
        await service.move(AGENT, SESSION, "gone.txt", "archive/gone.txt")

    await service.delete_file(AGENT, SESSION, "input", "archive/a.txt")
    assert not (input_dir / "archive" / "a.txt").exists()


@pytest.mark.anyio
@pytest.mark.parametrize("name", ["", "../evil.txt", "dir/evil.txt"])
async def test_upload_rejects_bad_names(service, name) -> None:
    with pytest.raises(SessionFileError):
        await service.upload(AGENT, SESSION, UploadFile(filename=name, file=io.BytesIO(b"x")))


@pytest.mark.anyio
async def test_upload_rejects_oversized_files(service, workspace) -> None:
    upload = UploadFile(filename="big.bin", file=io.BytesIO(b"0" * 65))

    with pytest.raises(SessionFileTooLarge):
        await service.upload(AGENT, SESSION, upload)
    assert not (_input_dir(workspace) / "big.bin").exists()


@pytest.mark.anyio
async def test_symlinks_out_of_the_workspace_are_refused(service, workspace, tmp_path) -> None:
    secret = tmp_path / "secret.txt"
    secret.write_bytes(b"top secret")
    input_dir = _input_dir(workspace)
    input_dir.mkdir(parents=True)
    (input_dir / "link.txt").symlink_to(secret)

    with pytest.raises(WorkspacePathError):
        await service.read_file(AGENT, SESSION, "input", "link.txt")


@pytest.mark.anyio
async def test_without_workspace_requests_fail() -> None:
    service = SessionFileService(None)
    with pytest.raises(SessionFileError):
        await service.list_files(AGENT, SESSION, "input")
