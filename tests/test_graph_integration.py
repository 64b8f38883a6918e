"""
Manual integration checks against the primary mailbox.

Prerequisites (do not commit secrets):
- `config.toml` populated with a primary account and application-auth settings.
- `MS_GRAPH_CLIENT_SECRET` exported in the shell.

Notes:
- Tests exercise live Graph endpoints; they are marked so you opt-in before running.
- Never run in CI; these expect real tenant data and will read/modify categories.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from inbox_sweep import auth
from inbox_sweep.config import load_config
from inbox_sweep.graph_client import GraphClient
from inbox_sweep.utils import load_env_file


pytestmark = pytest.mark.integration


@pytest.fixture(scope="session")
def app_config():
    load_env_file()
    cfg_path = Path("config.toml")
    if not cfg_path.exists():
        pytest.skip("config.toml missing; create from config.example.toml with primary account settings")
    return load_config(cfg_path)


@pytest.fixture(scope="session")
def primary_account(app_config):
    if not app_config.accounts:
        pytest.skip("No accounts configured in config.toml")
    return app_config.accounts[0]


@pytest.fixture(scope="session")
def graph(app_config, primary_account) -> GraphClient:
    if app_config.auth.auth_mode != "application":
        pytest.skip("Integration tests expect application auth for unattended runs")
    try:
        return auth.connect_graph(app_config, primary_account, interactive=False)
    except Exception as exc:
        pytest.skip(f"Unable to connect to Graph ({exc})")


def test_marker_categories_exist(graph: GraphClient, app_config):
    """Ensure both terminal markers exist as master categories with their colours."""
    labels = app_config.labels
    desired = {labels.processed: labels.processed_color, labels.error: labels.error_color}
    results = graph.ensure_master_categories(desired)
    by_name = {c["displayName"]: c for c in graph.list_master_categories()}
    for name, color in desired.items():
        assert by_name[name]["color"] == color
        assert results[name] in {"create", "update", "unchanged"}


def test_candidates_are_unmarked_and_ordered(graph: GraphClient, app_config):
    """Listing candidates never returns a message that already carries a marker."""
    labels = app_config.labels
    messages = graph.list_candidate_messages(limit=10)
    for m in messages:
        assert labels.processed not in (m.get("categories") or [])
        assert labels.error not in (m.get("categories") or [])
    received = [m.get("receivedDateTime") for m in messages]
    assert received == sorted(received)
