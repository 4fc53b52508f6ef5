from __future__ import annotations


class SetupError(Exception):
    """Configuration problem detected before any virtual client starts."""


class FixtureError(SetupError):
    def __init__(self, name: str, path: str, reason: str) -> None:
        super().__init__(f"Fixture '{name}' could not be loaded from {path}: {reason}")
        self.name = name
        self.path = path
        self.reason = reason


class ScenarioError(SetupError, ValueError):
    pass


class BuildError(SetupError):
    def __init__(self, fixture_name: str) -> None:
        super().__init__(f"Request references unknown fixture '{fixture_name}'")
        self.fixture_name = fixture_name
