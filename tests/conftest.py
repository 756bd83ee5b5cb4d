"""
Pytest configuration for convogate tests.

Live tests are marked ``e2e`` and skipped unless ``--run-e2e`` is given.
Tests that need a running MCP tool server take the ``mcp_server_url``
fixture, fed by ``--mcp-url`` or the ``CONVOGATE_MCP_URL`` variable.
"""

import os

import pytest


def pytest_addoption(parser):
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run end-to-end tests against real provider APIs and tool servers",
    )
    parser.addoption(
        "--mcp-url",
        default=os.getenv("CONVOGATE_MCP_URL"),
        help="Streamable HTTP URL of an MCP tool server for e2e tests",
    )


def pytest_configure(config):
    for marker in (
        "e2e: end-to-end test (requires real API keys, use --run-e2e to run)",
        "openai: requires OPENAI_API_KEY",
        "anthropic: requires ANTHROPIC_API_KEY",
        "mcp: requires a running MCP tool server (--mcp-url)",
    ):
        config.addinivalue_line("markers", marker)


def pytest_collection_modifyitems(config, items):
    if config.getoption("--run-e2e"):
        return
    skip_e2e = pytest.mark.skip(reason="Need --run-e2e option to run end-to-end tests")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


@pytest.fixture
def mcp_server_url(request) -> str:
    url = request.config.getoption("--mcp-url")
    if not url:
        pytest.skip("Need --mcp-url (or CONVOGATE_MCP_URL) pointing at an MCP server")
    return url
