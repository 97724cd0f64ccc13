"""
Register pytest plugins, fixtures, and hooks to be used during test execution.

All fixtures are organized in the fixtures/ directory for better maintainability.

Docs: https://stackoverflow.com/questions/34466027/in-pytest-what-is-the-use-of-conftest-py-files
"""

# Register all fixture modules
# Fixtures are automatically discovered from these modules
pytest_plugins = [
    # Core application fixtures
    "tests.fixtures.app_fixtures",
    # Workflow collaborators, stores and services
    "tests.fixtures.workflow_fixtures",
    # Logging mocks
    "tests.fixtures.logging_fixtures",
]
