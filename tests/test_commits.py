"""Tests for rewind.commits module."""

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from rewind.commits import CommitGraph, serialize_commit
from rewind.errors import AmbiguousError, CorruptError, NotFoundError
from rewind.store import hash_bytes, sharded_path

TREE = "e" * 64
T0 = datetime(2026, 1, 2, 3, 4, 5, 678901, tzinfo=UTC)


@pytest.fixture
def graph(tmp_path: Path) -> CommitGraph:
    return CommitGraph(tmp_path / "commits")


def make_chain(graph: CommitGraph, count: int) -> list[str]:
    ids = []
    parent = None
    for i in range(count):
        parent = graph.append(TREE, parent, f"commit {i}", T0 + timedelta(seconds=i))
        ids.append(parent)
    return ids


class TestSerialization:
    def test_canonical_json(self):
        data = serialize_commit(TREE, None, "msg", "2026-01-02T03:04:05.678901+00:00")

        assert json.loads(data) == {
            "message": "msg",
            "parent": None,
            "timestamp": "2026-01-02T03:04:05.678901+00:00",
            "tree": TREE,
        }
        assert data.startswith(b'{"message":')
        assert b" " not in data.replace(b"msg", b"")


class TestAppendRead:
    def test_id_is_hash_of_content(self, graph: CommitGraph):
        commit_id = graph.append(TREE, None, "first", T0)

        expected = serialize_commit(TREE, None, "first", T0.isoformat(timespec="microseconds"))
        assert commit_id == hash_bytes(expected)

    def test_append_is_deterministic(self, graph: CommitGraph):
        """Same inputs, same id, no duplicate object."""
        a = graph.append(TREE, None, "same", T0)
        b = graph.append(TREE, None, "same", T0)

        assert a == b
        assert list(graph.ids()) == [a]

    def test_read_round_trip(self, graph: CommitGraph):
        parent = graph.append(TREE, None, "first", T0)
        child = graph.append(TREE, parent, "second", T0 + timedelta(seconds=1))

        commit = graph.read(child)

        assert commit.id == child
        assert commit.parent == parent
        assert commit.tree == TREE
        assert commit.message == "second"
        assert commit.timestamp == "2026-01-02T03:04:06.678901+00:00"
        assert commit.time == T0 + timedelta(seconds=1)
        assert commit.short_id == child[:8]

    def test_read_root_has_no_parent(self, graph: CommitGraph):
        assert graph.read(graph.append(TREE, None, "root", T0)).parent is None

    def test_read_unknown(self, graph: CommitGraph):
        with pytest.raises(NotFoundError):
            graph.read("0" * 64)

    def test_read_invalid_id(self, graph: CommitGraph):
        with pytest.raises(NotFoundError):
            graph.read("HEAD")

    def test_read_corrupt(self, graph: CommitGraph):
        commit_id = graph.append(TREE, None, "x", T0)
        path = sharded_path(graph.root, commit_id)
        path.chmod(0o644)
        path.write_bytes(b"{}")

        with pytest.raises(CorruptError):
            graph.read(commit_id)


class TestWalk:
    def test_newest_first(self, graph: CommitGraph):
        ids = make_chain(graph, 4)

        assert [c.id for c in graph.walk(ids[-1])] == list(reversed(ids))

    def test_limit(self, graph: CommitGraph):
        ids = make_chain(graph, 4)

        assert [c.id for c in graph.walk(ids[-1], limit=2)] == [ids[3], ids[2]]

    def test_empty_history(self, graph: CommitGraph):
        assert graph.walk(None) == []

    def test_same_timestamp_keeps_parent_order(self, graph: CommitGraph):
        """Ordering follows parent links, not timestamps."""
        a = graph.append(TREE, None, "a", T0)
        b = graph.append(TREE, a, "b", T0)
        c = graph.append(TREE, b, "c", T0)

        assert [x.message for x in graph.walk(c)] == ["c", "b", "a"]


class TestResolvePrefix:
    def test_full_id(self, graph: CommitGraph):
        commit_id = graph.append(TREE, None, "x", T0)

        assert graph.resolve_prefix(commit_id) == commit_id

    def test_short_id(self, graph: CommitGraph):
        commit_id = graph.append(TREE, None, "x", T0)

        assert graph.resolve_prefix(commit_id[:8]) == commit_id
        assert graph.resolve_prefix(commit_id[:8].upper()) == commit_id

    def test_no_match(self, graph: CommitGraph):
        graph.append(TREE, None, "x", T0)

        with pytest.raises(NotFoundError):
            graph.resolve_prefix("zzzzzzzz")

    def test_empty_prefix(self, graph: CommitGraph):
        with pytest.raises(NotFoundError):
            graph.resolve_prefix("")

    def test_ambiguous(self, graph: CommitGraph):
        """17 commits over 16 hex digits guarantee a shared first character."""
        ids = make_chain(graph, 17)
        first_chars = [i[0] for i in ids]
        shared = next(ch for ch in first_chars if first_chars.count(ch) > 1)

        with pytest.raises(AmbiguousError) as exc_info:
            graph.resolve_prefix(shared)

        assert len(exc_info.value.matches) == first_chars.count(shared)
        assert all(m.startswith(shared) for m in exc_info.value.matches)

    def test_ambiguous_short_id(self, graph: CommitGraph):
        a = "abcdef12" + "0" * 56
        b = "abcdef12" + "1" * 56

        with patch.object(CommitGraph, "ids", return_value=iter([a, b])):
            with pytest.raises(AmbiguousError) as exc_info:
                graph.resolve_prefix("abcdef12")

        assert exc_info.value.matches == [a, b]
