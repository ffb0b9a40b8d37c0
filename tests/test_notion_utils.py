from collections.abc import Callable
from unittest.mock import MagicMock, patch

import pytest
from notion_client import APIResponseError

from notion_db_sync import notion_utils
from notion_db_sync.utils import PassError


@pytest.mark.unit
class TestGetToken:
    """Test the token lookup order."""

    def test_explicit_pass_path_wins(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("NOTION_API_KEY", "env-token")
        with patch("notion_db_sync.notion_utils.utils.get_pass_value", return_value="pass-token") as get_pass:
            assert notion_utils.get_token("notion/other") == "pass-token"
        get_pass.assert_called_once_with("notion/other")

    def test_env_var_before_default_pass_path(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("NOTION_API_KEY", "env-token")
        with patch("notion_db_sync.notion_utils.utils.get_pass_value") as get_pass:
            assert notion_utils.get_token() == "env-token"
        get_pass.assert_not_called()

    def test_falls_back_to_default_pass_path(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("NOTION_API_KEY", raising=False)
        with patch("notion_db_sync.notion_utils.utils.get_pass_value", return_value="default") as get_pass:
            assert notion_utils.get_token() == "default"
        get_pass.assert_called_once_with("notion/cli/token")

    def test_no_token_anywhere(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("NOTION_API_KEY", raising=False)
        with patch("notion_db_sync.notion_utils.utils.get_pass_value", side_effect=PassError("no pass")):
            assert notion_utils.get_token() is None


@pytest.mark.unit
class TestErrorClassification:
    def test_not_found(self, api_error: Callable[..., APIResponseError]) -> None:
        assert notion_utils.is_not_found(api_error(404, "object_not_found"))
        assert not notion_utils.is_not_found(api_error(409, "conflict_error"))
        assert not notion_utils.is_not_found(ValueError("404"))

    def test_conflict(self, api_error: Callable[..., APIResponseError]) -> None:
        assert notion_utils.is_conflict(api_error(409, "conflict_error"))
        assert not notion_utils.is_conflict(api_error(429, "rate_limited"))


@pytest.mark.unit
class TestResolveDataSourceId:
    """Test finding the data source behind a database."""

    def test_single_source(self) -> None:
        client = MagicMock()
        client.databases.retrieve.return_value = {"data_sources": [{"id": "ds-1", "name": "Tasks"}]}

        assert notion_utils.resolve_data_source_id(client, "db-1") == "ds-1"
        client.databases.retrieve.assert_called_once_with(database_id="db-1")

    def test_several_sources_use_the_first(self) -> None:
        client = MagicMock()
        client.databases.retrieve.return_value = {
            "data_sources": [{"id": "ds-1", "name": "Tasks"}, {"id": "ds-2", "name": "Archive"}]
        }

        assert notion_utils.resolve_data_source_id(client, "db-1") == "ds-1"

    def test_no_source_is_an_error(self) -> None:
        client = MagicMock()
        client.databases.retrieve.return_value = {"data_sources": []}

        with pytest.raises(ValueError, match="no data source"):
            notion_utils.resolve_data_source_id(client, "db-1")


@pytest.mark.unit
class TestHelpers:
    def test_plain_text(self) -> None:
        runs = [{"plain_text": "Hello "}, {"type": "text", "text": {"content": "world"}}]
        assert notion_utils.plain_text(runs) == "Hello world"
        assert notion_utils.plain_text(None) == ""

    def test_iterate_paginated_sets_page_size(self) -> None:
        endpoint = MagicMock(return_value={"results": [1, 2], "has_more": False, "next_cursor": None})

        assert list(notion_utils.iterate_paginated(endpoint, block_id="b")) == [1, 2]
        assert endpoint.call_args.kwargs["page_size"] == notion_utils.PAGE_SIZE

    def test_get_client_passes_timeout(self) -> None:
        with patch("notion_db_sync.notion_utils.Client") as client_cls:
            notion_utils.get_client("secret", timeout_ms=1234)
        client_cls.assert_called_once_with(auth="secret", timeout_ms=1234)
