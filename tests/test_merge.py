from io import BytesIO

import pytest
from git import Actor
from gitdb.base import IStream

from kagami import MergeAborted, MergeEngine, MergeState, ObjectStore

ACTOR = Actor("Tester", "tester@example.com")
FILE_MODE = 0o100644
EXEC_MODE = 0o100755
BRANCH = "gitlab"


def make_commit(store: ObjectStore, files, parents=()):
    """Write a commit from ``files``: path -> bytes, or path -> (mode, bytes)."""
    entries = {}
    for path, value in files.items():
        mode, data = value if isinstance(value, tuple) else (FILE_MODE, value)
        entries[path] = (mode, store.write_blob(data))
    tree = store.write_tree(entries)
    return store.create_commit(tree, list(parents), ACTOR, ACTOR, "test")


def contents(store: ObjectStore, tree):
    return {path: store.read_blob(binsha) for path, (_, binsha) in store.flatten_tree(tree).items()}


@pytest.fixture
def store(tmp_path):
    s = ObjectStore.init_or_open(tmp_path / "mirror")
    yield s
    s.close()


@pytest.fixture
def base(store):
    commit = make_commit(store, {"readme.md": b"title\nbody\n", "notes.txt": b"1\n2\n3\n4\n5\n6\n7\n8\n"})
    head = store.create_branch(BRANCH, commit)
    store.set_head(head)
    store.checkout_head()
    return commit


def derive(store, parent, changes=None, delete=()):
    files = contents(store, parent.tree)
    files.update(changes or {})
    for path in delete:
        files.pop(path)
    return make_commit(store, files, [parent])


def test_self_merge_is_clean_and_unchanged(store, base):
    engine = MergeEngine(store, BRANCH)

    result = engine.merge(base, base)

    assert result.state is MergeState.CLEAN
    assert not result.conflicted
    assert result.tree_id == base.tree.hexsha
    assert engine.commit_if_clean(ACTOR, "merge") == base.hexsha
    assert engine.state is MergeState.COMMITTED
    assert store.find_branch(BRANCH).commit == base


def test_independent_changes_merge_cleanly(store, base):
    source = derive(store, base, {"readme.md": b"title\nbody from source\n"})
    destination = derive(store, base, {"docs/guide.md": b"guide\n"})
    store.create_branch(BRANCH, destination)

    engine = MergeEngine(store, BRANCH)
    result = engine.merge(source, destination)

    assert result.state is MergeState.CLEAN
    assert result.base_id == base.hexsha
    merged = contents(store, result.tree)
    assert merged["readme.md"] == b"title\nbody from source\n"
    assert merged["docs/guide.md"] == b"guide\n"

    commit_id = engine.commit_if_clean(ACTOR, "Merge commit")
    commit = store.repo.commit(commit_id)
    assert [p.hexsha for p in commit.parents] == [destination.hexsha, source.hexsha]
    assert commit.message == "Merge commit"
    assert store.find_branch(BRANCH).commit.hexsha == commit_id
    assert (store.path / "docs" / "guide.md").read_text() == "guide\n"


def test_linear_history_records_destination_only(store, base):
    source = derive(store, base, {"a.txt": b"hello"})
    store.create_branch(BRANCH, base)

    engine = MergeEngine(store, BRANCH, linear_history=True)
    engine.merge(source, base)
    commit = store.repo.commit(engine.commit_if_clean(ACTOR, "m"))

    assert [p.hexsha for p in commit.parents] == [base.hexsha]
    assert contents(store, commit.tree)["a.txt"] == b"hello"


def test_conflicting_change_blocks_merge(store, base):
    source = derive(store, base, {"readme.md": b"X\nbody\n"})
    destination = derive(store, base, {"readme.md": b"Y\nbody\n"})
    store.create_branch(BRANCH, destination)

    engine = MergeEngine(store, BRANCH)
    result = engine.merge(source, destination)

    assert result.state is MergeState.BLOCKED
    assert result.tree is None
    assert result.conflicted_paths == ["readme.md"]
    conflict = result.conflicts[0]
    assert conflict.reason == "content"
    assert conflict.source.binsha == store.flatten_tree(source.tree)["readme.md"][1]
    assert conflict.destination.binsha == store.flatten_tree(destination.tree)["readme.md"][1]
    assert conflict.base.object_id == store.flatten_tree(base.tree)["readme.md"][1].hex()

    with pytest.raises(MergeAborted):
        engine.commit_if_clean(ACTOR, "m")
    assert store.find_branch(BRANCH).commit == destination


def test_non_overlapping_edits_to_one_file_are_auto_merged(store, base):
    source = derive(store, base, {"notes.txt": b"ONE\n2\n3\n4\n5\n6\n7\n8\n"})
    destination = derive(store, base, {"notes.txt": b"1\n2\n3\n4\n5\n6\n7\nEIGHT\n"})

    result = MergeEngine(store, BRANCH).merge(source, destination)

    assert result.state is MergeState.CLEAN
    assert result.auto_merged == ("notes.txt",)
    assert contents(store, result.tree)["notes.txt"] == b"ONE\n2\n3\n4\n5\n6\n7\nEIGHT\n"


def test_text_merge_can_be_disabled(store, base):
    source = derive(store, base, {"notes.txt": b"ONE\n2\n3\n4\n5\n6\n7\n8\n"})
    destination = derive(store, base, {"notes.txt": b"1\n2\n3\n4\n5\n6\n7\nEIGHT\n"})

    result = MergeEngine(store, BRANCH, text_merge=False).merge(source, destination)

    assert result.conflicted_paths == ["notes.txt"]


def test_binary_edits_on_both_sides_conflict(store, base):
    common = make_commit(store, {"blob.bin": b"\x00base"}, [base])
    source = derive(store, common, {"blob.bin": b"\x00source"})
    destination = derive(store, common, {"blob.bin": b"\x00destination"})

    result = MergeEngine(store, BRANCH).merge(source, destination)

    assert result.conflicted_paths == ["blob.bin"]


def test_mode_change_and_content_change_combine(store, base):
    source = derive(store, base, {"readme.md": (EXEC_MODE, b"title\nbody\n")})
    destination = derive(store, base, {"readme.md": b"title\nnew body\n"})

    result = MergeEngine(store, BRANCH).merge(source, destination)

    assert result.state is MergeState.CLEAN
    mode, binsha = store.flatten_tree(result.tree)["readme.md"]
    assert mode == EXEC_MODE
    assert store.read_blob(binsha) == b"title\nnew body\n"


def test_modify_delete_conflict(store, base):
    source = derive(store, base, delete=["readme.md"])
    destination = derive(store, base, {"readme.md": b"title\nedited\n"})

    result = MergeEngine(store, BRANCH).merge(source, destination)

    assert result.conflicted_paths == ["readme.md"]
    assert result.conflicts[0].reason == "modify/delete"
    assert result.conflicts[0].source is None


def test_deletion_on_one_side_is_applied(store, base):
    source = derive(store, base, delete=["notes.txt"])

    result = MergeEngine(store, BRANCH).merge(source, base)

    assert result.state is MergeState.CLEAN
    assert "notes.txt" not in contents(store, result.tree)


def test_file_directory_clash_conflicts(store, base):
    source = derive(store, base, {"docs": b"a file\n"})
    destination = derive(store, base, {"docs/index.md": b"a directory\n"})

    result = MergeEngine(store, BRANCH).merge(source, destination)

    assert result.state is MergeState.BLOCKED
    assert result.conflicted_paths == ["docs"]
    assert result.conflicts[0].reason == "file/directory"


def test_unrelated_histories_merge_against_empty_base(store, base):
    other_root = make_commit(store, {"other.txt": b"elsewhere\n"})

    result = MergeEngine(store, BRANCH).merge(other_root, base)

    assert result.base_id is None
    assert result.state is MergeState.CLEAN
    assert set(contents(store, result.tree)) == {"readme.md", "notes.txt", "other.txt"}


def test_unrelated_histories_with_same_path_conflict(store, base):
    other_root = make_commit(store, {"readme.md": b"another project\n"})

    result = MergeEngine(store, BRANCH).merge(other_root, base)

    assert result.conflicted_paths == ["readme.md"]
    assert result.conflicts[0].reason == "add/add"
    assert result.conflicts[0].base is None


def test_source_behind_destination_commits_nothing(store, base):
    destination = derive(store, base, {"later.txt": b"newer\n"})
    store.create_branch(BRANCH, destination)

    engine = MergeEngine(store, BRANCH)
    result = engine.merge(base, destination)

    assert result.tree_id == destination.tree.hexsha
    assert engine.commit_if_clean(ACTOR, "m") == destination.hexsha
    assert store.find_branch(BRANCH).commit == destination


def test_unreadable_tree_aborts_merge(store, base):
    data = (
        b"tree " + b"1" * 40 + b"\n"
        b"parent " + base.hexsha.encode() + b"\n"
        b"author Tester <tester@example.com> 0 +0000\n"
        b"committer Tester <tester@example.com> 0 +0000\n"
        b"\n"
        b"dangling tree\n"
    )
    istream = store.repo.odb.store(IStream(b"commit", len(data), BytesIO(data)))
    broken = store.repo.commit(istream.binsha.hex())

    engine = MergeEngine(store, BRANCH)
    with pytest.raises(MergeAborted) as excinfo:
        engine.merge(broken, base)

    assert excinfo.value.step == "merge"
    assert engine.state is MergeState.IDLE
    assert engine.result is None
    assert store.find_branch(BRANCH).commit == base


def test_commit_without_merge_is_rejected(store, base):
    with pytest.raises(MergeAborted):
        MergeEngine(store, BRANCH).commit_if_clean(ACTOR, "m")


def test_second_commit_is_rejected(store, base):
    engine = MergeEngine(store, BRANCH)
    engine.merge(base, base)
    engine.commit_if_clean(ACTOR, "m")

    with pytest.raises(MergeAborted, match="merge state is committed"):
        engine.commit_if_clean(ACTOR, "m")


def test_clean_state_without_heads_is_rejected(store, base):
    engine = MergeEngine(store, BRANCH)
    engine.merge(base, base)
    engine._source = None

    with pytest.raises(MergeAborted, match="nothing to commit"):
        engine.commit_if_clean(ACTOR, "m")
    assert store.find_branch(BRANCH).commit == base
