from pathlib import Path
from unittest.mock import Mock

import pytest

from notion_db_sync import hooks
from notion_db_sync.link_store import LinkStore
from notion_db_sync.models import LinkRecord, LinkStatus


@pytest.mark.unit
class TestOptionHooks:
    """Test hooks that re-express options by name."""

    def test_status_to_select(self) -> None:
        value = {"type": "status", "status": {"id": "abc", "name": "In progress", "color": "blue"}}
        assert hooks.status_to_select(value) == {"select": {"name": "In progress"}}

    def test_select_to_status_with_empty_value(self) -> None:
        assert hooks.select_to_status({"type": "select", "select": None}) == {"status": None}

    def test_select_and_status_by_name(self) -> None:
        assert hooks.select_by_name({"select": {"id": "1", "name": "High"}}) == {"select": {"name": "High"}}
        assert hooks.status_by_name({"status": {"id": "2", "name": "Done"}}) == {"status": {"name": "Done"}}

    def test_multi_select_by_name(self) -> None:
        value = {"multi_select": [{"id": "1", "name": "a"}, {"id": "2", "name": "b"}, {"id": "3"}]}
        assert hooks.multi_select_by_name(value) == {"multi_select": [{"name": "a"}, {"name": "b"}]}

    def test_title_and_rich_text_swap(self) -> None:
        runs = [{"type": "text", "text": {"content": "x"}}]
        assert hooks.rich_text_to_title({"rich_text": runs}) == {"title": runs}
        assert hooks.title_to_rich_text({"title": runs}) == {"rich_text": runs}

    def test_empty_people(self) -> None:
        assert hooks.empty_people({"people": [{"id": "u1"}]}) == {"people": []}


@pytest.mark.unit
class TestPeopleByEmail:
    def test_maps_known_emails_and_drops_others(self) -> None:
        user_store = Mock()
        user_store.get_user_id_by_email.side_effect = lambda email: {"ann@example.com": "target-ann"}.get(email)
        hook = hooks.make_people_by_email(user_store)

        result = hook(
            {
                "people": [
                    {"id": "src-ann", "person": {"email": "ann@example.com"}},
                    {"id": "src-bob", "person": {"email": "bob@example.com"}},
                    {"id": "bot", "bot": {}},
                ]
            }
        )

        assert result == {"people": [{"object": "user", "id": "target-ann"}]}


@pytest.mark.unit
class TestRelationHooks:
    """Test relations translated through the link ledger."""

    def _store(self, tmp_path: Path) -> LinkStore:
        store = LinkStore(tmp_path)
        store.save(LinkRecord(source_id="tag-1", target_id="new-tag-1", type="tags", source_page_name="Urgent"))
        store.save(LinkRecord(source_id="tag-2", target_id=None, type="tags", status=LinkStatus.FAIL))
        return store

    def test_linked_relation_translates_synced_ids(self, tmp_path: Path) -> None:
        hook = hooks.make_linked_relation(self._store(tmp_path), "tags")

        result = hook({"relation": [{"id": "tag-1"}, {"id": "tag-2"}, {"id": "tag-3"}]})

        assert result == {"relation": [{"id": "new-tag-1"}]}

    def test_relation_by_name_from_select(self, tmp_path: Path) -> None:
        hook = hooks.make_relation_by_name(self._store(tmp_path), "tags")

        assert hook({"type": "select", "select": {"name": "Urgent"}}) == {"relation": [{"id": "new-tag-1"}]}
        assert hook({"type": "select", "select": {"name": "Later"}}) == {"relation": []}

    def test_relation_by_name_from_multi_select_and_text(self, tmp_path: Path) -> None:
        hook = hooks.make_relation_by_name(self._store(tmp_path), "tags")

        multi = {"type": "multi_select", "multi_select": [{"name": "Urgent"}, {"name": "Other"}]}
        text = {"type": "rich_text", "rich_text": [{"plain_text": "Urg"}, {"plain_text": "ent"}]}

        assert hook(multi) == {"relation": [{"id": "new-tag-1"}]}
        assert hook(text) == {"relation": [{"id": "new-tag-1"}]}
        assert hook({"type": "number", "number": 3}) == {"relation": []}


@pytest.mark.unit
class TestBuiltinHooks:
    def test_store_backed_hooks_need_stores(self, tmp_path: Path) -> None:
        assert "people_by_email" not in hooks.builtin_hooks()
        assert "linked_relation" not in hooks.builtin_hooks()

        registered = hooks.builtin_hooks(user_store=Mock(), link_store=LinkStore(tmp_path))

        assert {"people_by_email", "linked_relation", "relation_by_name", "status_to_select"} <= set(registered)
