"""Tests for fixture loading."""

import pytest

from errors import BuildError, FixtureError, SetupError
from fixtures import FileFixture, FixtureSet, load_fixture, load_fixture_set


def test_load_fixture_set(fixtures_root):
    fixtures = load_fixture_set(fixtures_root / "pdf", ["gotenberg.pdf", "gotenberg_bis.pdf"])
    assert len(fixtures) == 2
    assert fixtures["gotenberg.pdf"] == FileFixture("gotenberg.pdf", b"%PDF-1.4 first")
    assert fixtures.total_bytes() == len(b"%PDF-1.4 first") + len(b"%PDF-1.4 second")


def test_duplicate_names_loaded_once(fixtures_root):
    fixtures = load_fixture_set(fixtures_root / "office", ["document.docx", "document.docx"])
    assert list(fixtures) == ["document.docx"]


def test_missing_fixture_names_file(fixtures_root):
    with pytest.raises(FixtureError) as excinfo:
        load_fixture_set(fixtures_root / "office", ["document.docx", "missing.odt"])
    assert excinfo.value.name == "missing.odt"
    assert "missing.odt" in str(excinfo.value)
    assert isinstance(excinfo.value, SetupError)


def test_directory_is_not_a_fixture(fixtures_root):
    with pytest.raises(FixtureError):
        load_fixture(fixtures_root / "pdf")


def test_get_unknown_fixture_raises_build_error():
    fixtures = FixtureSet([FileFixture("a.txt", b"a")])
    with pytest.raises(BuildError) as excinfo:
        fixtures.get_fixture("b.txt")
    assert excinfo.value.fixture_name == "b.txt"


def test_fixture_set_rejects_duplicates():
    with pytest.raises(ValueError):
        FixtureSet([FileFixture("a.txt", b"a"), FileFixture("a.txt", b"b")])


def test_fixture_is_immutable():
    fixture = FileFixture("a.txt", b"a")
    with pytest.raises(AttributeError):
        fixture.content = b"b"
