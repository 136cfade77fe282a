"""
Tests for MemoryClient and MemoryService over the in-memory store.

The e2e classes run the full path: scan -> classify -> sync for projects,
and add -> buffer -> categorize -> tag write-back for messages.
"""

import os
from datetime import datetime, timezone

import pytest

from memsync.api import MemoryClient, MemoryService, period_bounds
from memsync.store import StoreError
from memsync.types import IndexedFile, Message

from conftest import set_mtime


def _store_at(client, role, content, unix_time, tags=None):
    """Persist a message with an explicit creation time."""
    msg = Message.create(role, content, tags=tags)
    msg.unix_time = unix_time
    msg.timestamp = datetime.fromtimestamp(unix_time, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
    return client.store_message(msg)


def _payloads(fake_store, collection):
    return [p["payload"] for p in fake_store.points(collection)]


class TestCollections:

    def test_both_collections_created(self, fake_store, client):
        created = [c[1] for c in fake_store.calls if c[0] == "ensure_collection"]
        assert created == ["test_memory", "test_memory_project"]

    def test_explicit_project_collection(self, fake_store, mock_embedding_provider):
        c = MemoryClient(fake_store, mock_embedding_provider,
                         collection="a", project_collection="b")
        assert c.project_collection == "b"


class TestMessages:

    def test_add_and_get(self, client):
        msg = client.add_message("user", "hello", tags=["greeting"], metadata={"src": "test"})
        fetched = client.get_message(msg.id)
        assert fetched.content == "hello"
        assert fetched.tags == ["greeting"]
        assert fetched.metadata == {"src": "test"}

    def test_get_unknown(self, client):
        assert client.get_message("nope") is None

    def test_empty_content_rejected(self, client, fake_store):
        with pytest.raises(ValueError):
            client.add_message("user", "   ")
        assert fake_store.count_calls("upsert") == 0

    def test_invalid_role_rejected_before_store(self, client, fake_store):
        with pytest.raises(ValueError):
            client.add_message("robot", "hi")
        assert fake_store.count_calls("upsert") == 0

    def test_history_newest_first(self, client):
        _store_at(client, "user", "first", 1000.0)
        _store_at(client, "assistant", "second", 2000.0)
        _store_at(client, "user", "third", 3000.0)
        history = client.get_history(limit=2)
        assert [m.content for m in history] == ["third", "second"]

    def test_history_excludes_project_records(self, client):
        _store_at(client, "project", "file content", 5000.0)
        _store_at(client, "user", "chat", 1000.0)
        assert [m.content for m in client.get_history()] == ["chat"]

    def test_history_role_filter(self, client):
        _store_at(client, "user", "u", 1000.0)
        _store_at(client, "assistant", "a", 2000.0)
        assert [m.content for m in client.get_history(role="user")] == ["u"]
        with pytest.raises(ValueError):
            client.get_history(role="project")

    def test_history_time_window(self, client):
        _store_at(client, "user", "old", 1000.0)
        _store_at(client, "user", "new", 5000.0)
        since = datetime.fromtimestamp(2000.0, timezone.utc)
        assert [m.content for m in client.get_history(since=since)] == ["new"]

    def test_search_excludes_project_records(self, client):
        client.add_message("project", "def main(): pass")
        client.add_message("user", "def main(): pass")
        results = client.search("def main(): pass")
        assert [m.role for m in results] == ["user"]
        assert results[0].score == pytest.approx(1.0)

    def test_search_validates(self, client):
        with pytest.raises(ValueError):
            client.search("")
        with pytest.raises(ValueError):
            client.search("x", limit=0)

    def test_dedupe_off_by_default(self, client, fake_store):
        client.add_message("user", "same")
        client.add_message("user", "same")
        assert len(fake_store.points("test_memory")) == 2

    def test_dedupe_returns_existing(self, fake_store, mock_embedding_provider):
        c = MemoryClient(fake_store, mock_embedding_provider,
                         collection="d", dedupe_messages=True)
        c.ensure_collections()
        first = c.add_message("user", "same")
        second = c.add_message("user", "same")
        assert second.id == first.id
        assert len(fake_store.points("d")) == 1
        c.add_message("assistant", "same")
        assert len(fake_store.points("d")) == 2


class TestTagging:

    def test_tag_messages_single_batched_write(self, client, fake_store):
        ids = [client.add_message("user", f"m{i}").id for i in range(4)]
        assert client.tag_messages(ids, "important") == 4
        assert fake_store.count_calls("set_payload_batch") == 1
        for id in ids:
            assert fake_store.payload("test_memory", id)["tags"] == ["important"]

    def test_tag_is_appended_not_replaced(self, client, fake_store):
        msg = client.add_message("user", "x", tags=["existing"])
        client.tag_messages([msg.id], "new")
        assert fake_store.payload("test_memory", msg.id)["tags"] == ["existing", "new"]

    def test_tag_not_duplicated(self, client, fake_store):
        msg = client.add_message("user", "x", tags=["t"])
        assert client.tag_messages([msg.id], "t") == 0
        assert fake_store.payload("test_memory", msg.id)["tags"] == ["t"]

    def test_unknown_ids_ignored(self, client):
        msg = client.add_message("user", "x")
        assert client.tag_messages([msg.id, "missing"], "t") == 1

    def test_tag_validation(self, client):
        with pytest.raises(ValueError):
            client.tag_messages([], "t")
        with pytest.raises(ValueError):
            client.tag_messages(["a"], " ")

    def test_get_messages_by_tag(self, client):
        _store_at(client, "user", "a", 1000.0, tags=["x"])
        _store_at(client, "user", "b", 2000.0, tags=["y"])
        _store_at(client, "user", "c", 3000.0, tags=["x", "z"])
        assert [m.content for m in client.get_messages_by_tag("x")] == ["c", "a"]

    def test_summarize_and_tag(self, client, fake_store):
        msg = client.add_message("user", "the deploy failed on friday")
        updated = client.summarize_and_tag("the deploy failed on friday", "Deploy issue", ["ops"], limit=1)
        assert [m.id for m in updated] == [msg.id]
        payload = fake_store.payload("test_memory", msg.id)
        assert payload["summary"] == "Deploy issue"
        assert payload["tags"] == ["ops"]

    def test_summarize_requires_summary(self, client):
        with pytest.raises(ValueError):
            client.summarize_and_tag("q", "  ")


class TestDeletes:

    def test_delete_message(self, client):
        msg = client.add_message("user", "bye")
        assert client.delete_message(msg.id) is True
        assert client.get_message(msg.id) is None
        assert client.delete_message(msg.id) is False

    def test_delete_message_refuses_project_record(self, client):
        msg = client.add_message("project", "file")
        with pytest.raises(ValueError):
            client.delete_message(msg.id)

    def test_delete_all_keeps_project_records(self, client, fake_store):
        client.add_message("user", "a")
        client.add_message("assistant", "b")
        client.add_message("project", "c")
        assert client.delete_all_messages() == 2
        assert [p["role"] for p in _payloads(fake_store, "test_memory")] == ["project"]

    def test_delete_all_when_empty(self, client, fake_store):
        assert client.delete_all_messages() == 0
        assert fake_store.count_calls("delete_by_filter") == 0

    def test_delete_range_inclusive(self, client, fake_store):
        _store_at(client, "user", "before", 999.0)
        _store_at(client, "user", "start", 1000.0)
        _store_at(client, "user", "end", 2000.0)
        _store_at(client, "user", "after", 2001.0)
        deleted = client.delete_messages_in_range(
            datetime.fromtimestamp(1000.0, timezone.utc),
            datetime.fromtimestamp(2000.0, timezone.utc),
        )
        assert deleted == 2
        assert sorted(p["content"] for p in _payloads(fake_store, "test_memory")) == ["after", "before"]

    def test_delete_range_rejects_inverted(self, client):
        with pytest.raises(ValueError):
            client.delete_messages_in_range(
                datetime(2024, 2, 1, tzinfo=timezone.utc),
                datetime(2024, 1, 1, tzinfo=timezone.utc),
            )

    def test_delete_current_period(self, client, fake_store):
        now = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)
        _store_at(client, "user", "today", datetime(2024, 5, 15, 8, 0, tzinfo=timezone.utc).timestamp())
        _store_at(client, "user", "yesterday", datetime(2024, 5, 14, 8, 0, tzinfo=timezone.utc).timestamp())
        assert client.delete_current_period("day", now=now) == 1
        assert [p["content"] for p in _payloads(fake_store, "test_memory")] == ["yesterday"]


class TestPeriodBounds:

    def test_day(self):
        start, end = period_bounds("day", datetime(2024, 5, 15, 12, 30, tzinfo=timezone.utc))
        assert start == datetime(2024, 5, 15, tzinfo=timezone.utc)
        assert end == datetime(2024, 5, 15, 23, 59, 59, 999999, tzinfo=timezone.utc)

    def test_week_starts_monday(self):
        # 2024-05-15 is a Wednesday
        start, end = period_bounds("week", datetime(2024, 5, 15, tzinfo=timezone.utc))
        assert start == datetime(2024, 5, 13, tzinfo=timezone.utc)
        assert end.date().isoformat() == "2024-05-19"

    def test_december_month(self):
        start, end = period_bounds("month", datetime(2024, 12, 31, 23, 0, tzinfo=timezone.utc))
        assert start == datetime(2024, 12, 1, tzinfo=timezone.utc)
        assert end == datetime(2024, 12, 31, 23, 59, 59, 999999, tzinfo=timezone.utc)

    def test_invalid(self):
        with pytest.raises(ValueError, match="Invalid period"):
            period_bounds("year")


class TestProjectFiles:

    def test_list_sorted_by_path(self, client, project_dir):
        client.index_project(str(project_dir))
        paths = [f.path for f in client.list_project_files()]
        assert paths == ["README.md", "docs/notes.txt", "main.py"]

    def test_search_project_files(self, client, project_dir):
        client.index_project(str(project_dir), tag="demo")
        content = (project_dir / "main.py").read_text()
        results = client.search_project_files(content, limit=1)
        assert results[0].path == "main.py"
        assert client.search_project_files(content, tag="other") == []

    def test_search_scoped_to_project(self, client, project_dir, tmp_path):
        other = tmp_path / "other"
        other.mkdir()
        (other / "x.py").write_text("x = 1\n")
        client.index_project(str(project_dir))
        client.index_project(str(other))
        results = client.search_project_files("x = 1\n", limit=10, project=str(other))
        assert [f.path for f in results] == ["x.py"]

    def test_files_are_not_conversation(self, client, project_dir):
        client.index_project(str(project_dir))
        assert client.get_history() == []

    def test_delete_project_file(self, client, project_dir):
        client.index_project(str(project_dir))
        assert client.delete_project_file("./docs/notes.txt", project=str(project_dir)) == 1
        assert "docs/notes.txt" not in [f.path for f in client.list_project_files()]

    def test_delete_project_file_unknown(self, client, project_dir):
        client.index_project(str(project_dir))
        assert client.delete_project_file("nope.py") == 0

    def test_delete_by_tag(self, client, project_dir, tmp_path):
        other = tmp_path / "other"
        other.mkdir()
        (other / "x.py").write_text("x = 1\n")
        client.index_project(str(project_dir), tag="keep")
        client.index_project(str(other), tag="drop")
        assert client.delete_project_files_by_tag("drop") == 1
        assert len(client.list_project_files()) == 3

    def test_delete_all_project_files(self, client, project_dir, fake_store):
        client.add_message("user", "survives")
        client.index_project(str(project_dir))
        assert client.delete_all_project_files() == 3
        assert client.list_project_files() == []
        assert len(fake_store.points("test_memory")) == 1

    def test_prior_index_reads_only_index_fields(self, client, project_dir, fake_store):
        client.index_project(str(project_dir), tag="demo")
        seen = []
        query = fake_store.query_by_filter

        def recording_query(*args, **kwargs):
            seen.append(kwargs.get("payload_fields"))
            return query(*args, **kwargs)

        fake_store.query_by_filter = recording_query
        markers, tags = client.prior_index(os.path.abspath(str(project_dir)))
        assert seen == [["path", "mod_time", "tag"]]
        assert sorted(markers) == ["README.md", "docs/notes.txt", "main.py"]
        assert set(tags.values()) == {"demo"}

    def test_prune_removes_vanished(self, client, project_dir):
        client.index_project(str(project_dir))
        os.remove(project_dir / "README.md")
        assert client.prune_project(str(project_dir)) == ["README.md"]
        assert [f.path for f in client.list_project_files()] == ["docs/notes.txt", "main.py"]
        assert client.prune_project(str(project_dir)) == []

    def test_update_reports_missing_without_deleting(self, client, project_dir):
        client.index_project(str(project_dir))
        os.remove(project_dir / "README.md")
        run = client.update_project(str(project_dir))
        assert run.missing == ["README.md"]
        assert len(client.list_project_files()) == 3

    def test_missing_root(self, client, tmp_path):
        with pytest.raises(ValueError):
            client.index_project(str(tmp_path / "absent"))

    def test_stats(self, client, project_dir):
        client.add_message("user", "a")
        client.add_message("user", "b")
        client.add_message("assistant", "c")
        client.index_project(str(project_dir))
        stats = client.get_stats()
        assert stats["total_vectors"] == 3
        assert stats["message_count"] == {"assistant": 1, "system": 0, "user": 2}
        assert stats["project_file_count"] == 3
        assert stats["project_collection"] == "test_memory_project"


@pytest.mark.e2e
class TestProjectSyncEndToEnd:

    def test_index_then_rerun_then_modify(self, client, project_dir, fake_store):
        first = client.index_project(str(project_dir), tag="demo")
        assert first.succeeded == 3
        assert first.skipped == 1
        assert first.failed == 0
        assert first.succeeded + first.failed + first.skipped == first.scanned
        records = [IndexedFile.from_point(p) for p in fake_store.points("test_memory_project")]
        assert {r.path for r in records} == {"main.py", "README.md", "docs/notes.txt"}

        second = client.update_project(str(project_dir))
        assert (second.new, second.modified, second.succeeded) == (0, 0, 0)
        assert second.unchanged == 3
        assert second.ok

        marker = os.stat(project_dir / "main.py").st_mtime_ns
        set_mtime(project_dir / "main.py", marker + 1_000_000_000)
        third = client.update_project(str(project_dir))
        assert (third.new, third.modified, third.succeeded) == (0, 1, 1)
        # Update keeps the tag given at index time
        tags = {r.path: r.tag for r in
                (IndexedFile.from_point(p) for p in fake_store.points("test_memory_project"))}
        assert tags["main.py"] == "demo"

    def test_unreachable_store_reported_as_failure(self, client, project_dir, fake_store):
        from memsync.store import TransientStoreError
        fake_store.upsert_error = TransientStoreError("connection refused")
        run = client.index_project(str(project_dir))
        assert run.succeeded == 0
        assert run.failed == 3
        assert run.systemic_failure
        assert all(e.attempts == 3 for e in run.errors)

    def test_force_reindexes_unchanged(self, client, project_dir):
        client.index_project(str(project_dir))
        run = client.index_project(str(project_dir), force=True)
        assert run.succeeded == 3
        assert run.unchanged == 0


@pytest.mark.e2e
class TestCategorizationEndToEnd:

    def test_five_technical_messages_tagged(self, service, fake_store):
        for _ in range(5):
            service.add_message("user", "fix this bug in my function")
        service.buffer.join()
        payloads = _payloads(fake_store, "test_memory")
        assert len(payloads) == 5
        assert all("category:technical" in p["tags"] for p in payloads)
        assert service.buffer.pending == 0

    def test_four_messages_not_categorized(self, service, fake_store):
        for _ in range(4):
            service.add_message("user", "fix this bug in my function")
        service.buffer.join()
        assert all(p["tags"] == [] for p in _payloads(fake_store, "test_memory"))
        assert service.buffer.pending == 4

    def test_manual_mode_switch_dispatches(self, service, fake_store):
        service.set_tagging_mode("manual")
        for _ in range(7):
            service.add_message("user", "fix this bug in my function")
        assert service.set_tagging_mode("automatic") == 5
        service.buffer.join()
        tagged = [p for p in _payloads(fake_store, "test_memory")
                  if "category:technical" in p["tags"]]
        assert len(tagged) == 5

    def test_tag_write_failure_does_not_block_adds(self, service, fake_store):
        fake_store.set_payload_error = StoreError("unavailable", 503)
        for _ in range(5):
            service.add_message("user", "fix this bug in my function")
        service.buffer.join()
        assert len(_payloads(fake_store, "test_memory")) == 5


class TestService:

    def test_conversation_tag_stamped_before_store(self, service, fake_store):
        service.set_conversation_tag("sprint-12")
        msg = service.add_message("user", "hello")
        assert fake_store.payload("test_memory", msg.id)["tags"] == ["sprint-12"]
        assert service.get_conversation_tag() == "sprint-12"

    def test_tag_change_during_store_not_applied(self, service, fake_store):
        service.set_conversation_tag("a")
        upsert = fake_store.upsert

        def upsert_then_retag(*args, **kwargs):
            upsert(*args, **kwargs)
            service.set_conversation_tag("b")

        fake_store.upsert = upsert_then_retag
        msg = service.add_message("user", "hello")
        assert msg.tags == ["a"]
        assert fake_store.payload("test_memory", msg.id)["tags"] == ["a"]
        assert service.buffer.pending == 1

    def test_clear_conversation_tag(self, service):
        service.set_conversation_tag("x")
        assert service.set_conversation_tag("") == ""
        assert service.add_message("user", "hi").tags == []

    def test_project_messages_bypass_buffer(self, service):
        service.add_message("project", "content")
        assert service.buffer.pending == 0

    def test_invalid_mode(self, service):
        with pytest.raises(ValueError):
            service.set_tagging_mode("never")

    def test_health(self, service):
        health = service.health()
        assert health["status"] == "ok"
        assert health["tagging_mode"] == "automatic"
        assert health["pending_messages"] == 0

    def test_health_degraded(self, service, fake_store):
        fake_store.ping = lambda: False
        assert service.health()["status"] == "degraded"

    def test_close_closes_store(self, client, fake_store):
        with MemoryService(client):
            pass
        assert fake_store.closed

    def test_from_config(self, tmp_path, fake_store, mock_embedding_provider):
        from memsync.config import MemsyncConfig
        config = MemsyncConfig(path=tmp_path, collection="cfg", tagging_mode="manual",
                               tagging_threshold=3)
        svc = MemoryService.from_config(config, store=fake_store, embedder=mock_embedding_provider)
        try:
            assert svc.client.collection == "cfg"
            assert svc.get_tagging_mode() == "manual"
            assert svc.buffer.threshold == 3
            assert ("ensure_collection", "cfg_project") in fake_store.calls
        finally:
            svc.close()
