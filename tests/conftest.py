"""
Pytest configuration and shared fixtures.

- Integration tests fail when the code under test logs WARNING or above
- Unit tests may log warnings freely (several paths warn on purpose)
- Factories for Notion-shaped pages and API errors
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, override

import httpx
import pytest
from notion_client import APIResponseError

if TYPE_CHECKING:
    from collections.abc import Callable, Generator

# Warning records captured per integration test node id
_integration_test_warnings: dict[str, list[logging.LogRecord]] = {}


class IntegrationTestWarningHandler(logging.Handler):
    """Collects WARNING+ records emitted while an integration test runs."""

    test_nodeid: str

    def __init__(self, test_nodeid: str) -> None:
        super().__init__(level=logging.WARNING)
        self.test_nodeid = test_nodeid

    @override
    def emit(self, record: logging.LogRecord) -> None:
        _integration_test_warnings.setdefault(self.test_nodeid, []).append(record)


@pytest.fixture(autouse=True)
def fail_on_log_warnings_for_integration_tests(
    request: pytest.FixtureRequest,
) -> Generator[None]:
    """Capture logger warnings during integration tests so the report hook can fail them."""
    if request.node.get_closest_marker("integration") is None:
        yield
        return

    test_nodeid = request.node.nodeid
    _integration_test_warnings[test_nodeid] = []
    handler = IntegrationTestWarningHandler(test_nodeid)
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    try:
        yield
    finally:
        root_logger.removeHandler(handler)


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(
    item: pytest.Item, call: pytest.CallInfo[None]
) -> Generator[None]:  # type: ignore[misc]
    """Turn a passed integration test into a failure if it logged warnings."""
    outcome = yield
    report = outcome.get_result()

    if call.when == "call" and report.outcome == "passed":
        warning_records = _integration_test_warnings.pop(item.nodeid, [])
        if warning_records:
            report.outcome = "failed"
            report.longrepr = f"Integration test failed: {len(warning_records)} warning(s) logged:\n" + "\n".join(
                f"  - {record.levelname}: {record.getMessage()} (in {record.name}:{record.lineno})"
                for record in warning_records
            )


def _api_error(status: int, code: str, message: str = "API error") -> APIResponseError:
    return APIResponseError(code=code, status=status, message=message, headers=httpx.Headers(), raw_body_text="")


@pytest.fixture
def api_error() -> Callable[..., APIResponseError]:
    """Factory for Notion API errors, e.g. ``api_error(404, "object_not_found")``."""
    return _api_error


def _page(
    page_id: str,
    *,
    title: str = "Task",
    last_edited: str = "2024-01-15T10:30:00.000Z",
    icon: dict[str, Any] | None = None,
    properties: dict[str, Any] | None = None,
) -> dict[str, Any]:
    props: dict[str, Any] = {
        "Name": {
            "id": "title",
            "type": "title",
            "title": [{"type": "text", "text": {"content": title}, "plain_text": title}],
        }
    }
    props.update(properties or {})
    return {
        "object": "page",
        "id": page_id,
        "last_edited_time": last_edited,
        "icon": icon,
        "properties": props,
    }


@pytest.fixture
def make_page() -> Callable[..., dict[str, Any]]:
    """Factory for source pages as returned by ``data_sources.query``."""
    return _page
