from __future__ import annotations

import os
import shutil
import sys
import uuid
from pathlib import Path
from typing import Dict, Iterable, Optional

import pytest
from git import Actor, Repo


def pytest_sessionstart(session):  # type: ignore[override]
    root = Path(__file__).resolve().parents[1]
    src = root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))
    os.environ.setdefault("PYTHONPATH", str(src))


TEST_ACTOR = Actor("Tester", "tester@example.com")
BRANCH = "master"


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep logs, user config and git identity away from the real home directory."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("KAGAMI_LOG_DISABLE_FILE", "1")
    for var in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(var, TEST_ACTOR.name)
    for var in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(var, TEST_ACTOR.email)
    for name in list(os.environ):
        if name.startswith("KAGAMI_") and name != "KAGAMI_LOG_DISABLE_FILE":
            monkeypatch.delenv(name, raising=False)

    from kagami import observability

    observability._overrides.clear()
    observability._logger_initialized = False
    yield
    observability._overrides.clear()
    observability._logger_initialized = False


def init_bare_remote(path: Path) -> Repo:
    """Create a bare repository whose HEAD names the test branch."""
    path.mkdir(parents=True, exist_ok=True)
    repo = Repo.init(path, bare=True)
    repo.git.symbolic_ref("HEAD", f"refs/heads/{BRANCH}")
    return repo


def push_commit(
    remote: Path,
    files: Optional[Dict[str, str | bytes]] = None,
    message: str = "update",
    *,
    delete: Iterable[str] = (),
    root: bool = False,
) -> str:
    """Commit ``files`` (and deletions) on top of the remote branch and push.

    ``root=True`` starts a new history regardless of what the remote holds.
    Returns the new commit's hexsha.
    """
    workdir = remote.parent / f"work-{uuid.uuid4().hex[:8]}"
    has_branch = any(h.name == BRANCH for h in Repo(remote).heads)
    if has_branch and not root:
        repo = Repo.clone_from(remote.as_posix(), workdir, branch=BRANCH)
    else:
        repo = Repo.init(workdir)
        repo.git.symbolic_ref("HEAD", f"refs/heads/{BRANCH}")
        repo.create_remote("origin", remote.as_posix())

    for rel, content in (files or {}).items():
        target = workdir / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            target.write_bytes(content)
        else:
            target.write_text(content, encoding="utf-8")
    if files:
        repo.index.add(list(files))
    deletions = list(delete)
    if deletions:
        repo.index.remove(deletions, working_tree=True)

    commit = repo.index.commit(message, author=TEST_ACTOR, committer=TEST_ACTOR)
    force = "+" if root else ""
    repo.remotes.origin.push(f"{force}HEAD:refs/heads/{BRANCH}")
    repo.close()
    shutil.rmtree(workdir)
    return commit.hexsha


@pytest.fixture
def remotes(tmp_path):
    """Two bare remotes ("github" source, "gitlab" destination) sharing one seed commit."""
    github = init_bare_remote(tmp_path / "github.git")
    gitlab = init_bare_remote(tmp_path / "gitlab.git")
    seed = push_commit(
        Path(github.git_dir),
        {"readme.md": "title\nbody\n", "src/app.py": "print('hi')\n"},
        "seed",
    )
    github.git.push(Path(gitlab.git_dir).as_posix(), f"refs/heads/{BRANCH}:refs/heads/{BRANCH}")
    return {
        "github": Path(github.git_dir),
        "gitlab": Path(gitlab.git_dir),
        "seed": seed,
    }


@pytest.fixture
def endpoints(remotes):
    from kagami import RemoteEndpoint

    source = RemoteEndpoint("github", remotes["github"].as_posix(), BRANCH)
    destination = RemoteEndpoint("gitlab", remotes["gitlab"].as_posix(), BRANCH)
    return source, destination


@pytest.fixture
def mirror_path(tmp_path) -> Path:
    return tmp_path / "sandbox"


def read_path(repo: Repo, commit_sha: str, path: str) -> bytes:
    """Read ``path`` from a commit's tree."""
    blob = repo.commit(commit_sha).tree / path
    return blob.data_stream.read()
