from __future__ import annotations

import pytest

from book_aggregator.migration import FilesystemObjectStore

pytestmark = pytest.mark.migration


@pytest.fixture
def store(tmp_path):
    for name in ("books/v1/a.json", "books/v1/b.json.gz", "books/v1/c.json", "other/d.json"):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"{}")
    return FilesystemObjectStore(tmp_path)


def test_list_pages_with_continuation_token(store):
    first, token = store.list_page("books/v1/", None, 2)
    second, last = store.list_page("books/v1/", token, 2)

    assert first == ["books/v1/a.json", "books/v1/b.json.gz"]
    assert token == "books/v1/b.json.gz"
    assert second == ["books/v1/c.json"]
    assert last is None


def test_open_and_move(store, tmp_path):
    with store.open("books/v1/a.json") as handle:
        assert handle.read() == b"{}"

    store.move("books/v1/a.json", "books/v1/processed/a.json")

    assert not (tmp_path / "books/v1/a.json").exists()
    assert (tmp_path / "books/v1/processed/a.json").read_bytes() == b"{}"


@pytest.mark.parametrize("key", ["", "/etc/passwd", "books/../../secret"])
def test_rejects_keys_outside_the_root(store, key):
    with pytest.raises(ValueError):
        store.open(key)


def test_rejects_non_positive_page_size(store):
    with pytest.raises(ValueError):
        store.list_page("books/v1/", None, 0)
