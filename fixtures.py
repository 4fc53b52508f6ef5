from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, Mapping, Optional

from errors import BuildError, FixtureError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileFixture:
    name: str
    content: bytes

    def __len__(self) -> int:
        return len(self.content)


class FixtureSet(Mapping[str, FileFixture]):
    def __init__(self, fixtures: Iterable[FileFixture]) -> None:
        self._fixtures: dict[str, FileFixture] = {}
        for fixture in fixtures:
            if fixture.name in self._fixtures:
                raise ValueError(f"Duplicate fixture name: {fixture.name}")
            self._fixtures[fixture.name] = fixture

    def __getitem__(self, name: str) -> FileFixture:
        return self._fixtures[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._fixtures)

    def __len__(self) -> int:
        return len(self._fixtures)

    def get_fixture(self, name: str) -> FileFixture:
        try:
            return self._fixtures[name]
        except KeyError:
            raise BuildError(name) from None

    def total_bytes(self) -> int:
        return sum(len(fixture) for fixture in self._fixtures.values())


def load_fixture(path: Path, name: Optional[str] = None) -> FileFixture:
    fixture_name = name or path.name
    if not path.is_file():
        raise FixtureError(fixture_name, str(path), "file not found")
    try:
        content = path.read_bytes()
    except OSError as exc:
        raise FixtureError(fixture_name, str(path), str(exc)) from exc
    return FileFixture(name=fixture_name, content=content)


def load_fixture_set(directory: Path, names: Iterable[str]) -> FixtureSet:
    fixtures = [load_fixture(directory / name, name=name) for name in dict.fromkeys(names)]
    fixture_set = FixtureSet(fixtures)
    logger.info(
        "Loaded %d fixture(s) from %s (%d bytes)",
        len(fixture_set),
        directory,
        fixture_set.total_bytes(),
    )
    return fixture_set
