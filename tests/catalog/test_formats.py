"""Classification, flattening and splitting of provider payloads."""

from __future__ import annotations

import json

import pytest

from book_aggregator.catalog.errors import FormatError
from book_aggregator.catalog.formats import (
    COVER_RESOLUTION,
    classify,
    dedupe_entries,
    entry_key,
    extract_document,
    flatten,
    split_payload,
    unwrap_preprocessed,
)
from book_aggregator.catalog.identifiers import new_canonical_id
from book_aggregator.catalog.types import ProviderSource, SourceFormat
from tests.helpers.fakes import bestseller_entry, google_volume, open_library_edition

pytestmark = pytest.mark.catalog


class TestClassify:
    """Structural shape detection."""

    def test_primary_provider_by_kind(self):
        assert classify(google_volume()) is SourceFormat.PRIMARY_PROVIDER

    def test_primary_provider_by_volume_info_and_id(self):
        payload = {"id": "abc", "volumeInfo": {"title": "T"}}
        assert classify(payload) is SourceFormat.PRIMARY_PROVIDER

    def test_open_catalog_by_key(self):
        assert classify(open_library_edition()) is SourceFormat.OPEN_CATALOG_PROVIDER

    def test_open_catalog_by_isbn_list(self):
        assert classify({"isbn_13": ["9780000000001"]}) is SourceFormat.OPEN_CATALOG_PROVIDER

    @pytest.mark.parametrize(
        "payload",
        [
            {"isbns": [{"isbn13": "9780000000001"}], "rank": 1},
            {"list_name": "Hardcover Fiction"},
            {"weeks_on_list": 0},
            {"primary_isbn13": "9780000000001", "rank": 4},
        ],
    )
    def test_bestseller_shapes(self, payload):
        assert classify(payload) is SourceFormat.BESTSELLER_PROVIDER

    def test_already_canonical_by_metadata_block(self):
        assert classify({"_metadata": {"data_source": "x"}}) is SourceFormat.ALREADY_CANONICAL

    def test_already_canonical_by_id_and_title(self):
        assert classify({"id": "abc", "title": "T"}) is SourceFormat.ALREADY_CANONICAL

    def test_unknown_shapes(self):
        assert classify({"foo": "bar"}) is SourceFormat.UNKNOWN
        assert classify(["not", "a", "mapping"]) is SourceFormat.UNKNOWN


class TestFlatten:
    """One flattener per format."""

    def test_primary_extracts_identifiers_and_best_cover(self):
        payload = google_volume(
            isbn10="0000000000",
            image_links={
                "smallThumbnail": "https://img/s.jpg",
                "thumbnail": "https://img/t.jpg",
                "large": "https://img/l.jpg",
            },
        )
        payload["saleInfo"] = {"isEbook": True, "listPrice": {"amount": 9.99, "currencyCode": "USD"}}
        payload["accessInfo"] = {"publicDomain": False, "webReaderLink": "https://read"}

        fields = flatten(payload, SourceFormat.PRIMARY_PROVIDER)

        assert fields["isbn13"] == "9780000000001"
        assert fields["isbn10"] == "0000000000"
        assert fields["cover_url"] == "https://img/l.jpg"
        assert fields["cover_resolution"] == COVER_RESOLUTION["large"]
        assert fields["external_ids"] == {"google_books": "vol-0001"}
        assert fields["list_price"] == 9.99
        assert fields["currency_code"] == "USD"
        assert fields["is_ebook"] is True
        assert fields["public_domain"] is False
        assert fields["web_reader_link"] == "https://read"

    def test_flatteners_drop_empty_values(self):
        payload = google_volume(description=None, published_date=None, authors=[])
        fields = flatten(payload, SourceFormat.PRIMARY_PROVIDER)
        assert "description" not in fields
        assert "published_date" not in fields
        assert "authors" not in fields

    def test_open_catalog_names_description_and_cover(self):
        fields = flatten(open_library_edition(), SourceFormat.OPEN_CATALOG_PROVIDER)
        assert fields["authors"] == ["Ada Author"]
        assert fields["description"] == "Edition description."
        assert fields["publisher"] == "Sample House"
        assert fields["cover_url"] == "https://covers.openlibrary.org/b/id/1234-L.jpg"
        assert fields["external_ids"] == {
            "openlibrary": "/books/OL1M",
            "openlibrary_work": "/works/OL1W",
        }

    def test_bestseller_rank_group_and_qualifier(self):
        fields = flatten(bestseller_entry(rank=2, weeks_on_list=5), SourceFormat.BESTSELLER_PROVIDER)
        assert fields["isbn13"] == "9780000000001"
        assert fields["bestseller_rank"] == 2
        assert fields["bestseller_weeks_on_list"] == 5
        assert fields["bestseller_list"] == "Hardcover Fiction"
        assert fields["qualifiers"] == {"nyt_bestseller": True}

    def test_canonical_aliases_and_volatile_metadata(self):
        payload = {
            "id": "legacy-volume",
            "title": "Old",
            "publishedDate": "1999",
            "_metadata": {"data_source": "s3", "lastUpdated": "2020-01-01"},
        }
        fields = flatten(payload, SourceFormat.ALREADY_CANONICAL)
        assert fields["published_date"] == "1999"
        assert fields["external_ids"] == {"google_books": "legacy-volume"}
        assert fields["metadata"] == {"data_source": "s3"}

    def test_unknown_is_flagged_for_review(self):
        fields = flatten({"isbn": "978-0-00-000000-1"}, SourceFormat.UNKNOWN)
        assert fields["isbn13"] == "9780000000001"
        assert fields["metadata"]["needs_review"] is True


class TestExtractDocument:
    def test_provider_id_comes_from_primary_volume(self):
        document = extract_document(google_volume(), source_key="books/v1/a.json")
        assert document.provider_id == "vol-0001"
        assert document.source is ProviderSource.GOOGLE_BOOKS
        assert document.source_key == "books/v1/a.json"
        assert document.has_identifier

    def test_canonical_id_is_kept_for_canonical_documents(self):
        record_id = new_canonical_id()
        document = extract_document({"id": record_id, "title": "Kept"})
        assert document.canonical_id == record_id
        assert document.provider_id is None

    def test_non_object_raises_format_error(self):
        with pytest.raises(FormatError):
            extract_document("just a string")


class TestSplitPayload:
    def test_search_response_items(self):
        payload = {"kind": "books#volumes", "items": [google_volume(), google_volume(volume_id="b")]}
        assert len(split_payload(payload)) == 2

    def test_bare_array(self):
        assert len(split_payload([google_volume(), bestseller_entry()])) == 2

    def test_bestseller_overview_lists(self):
        payload = {
            "results": {
                "bestsellers_date": "2024-03-02",
                "lists": [
                    {"list_name": "Fiction", "books": [{"primary_isbn13": "9780000000001", "rank": 1}]},
                    {"list_name": "Nonfiction", "books": [{"primary_isbn13": "9780000000002", "rank": 1}]},
                ],
            }
        }
        entries = split_payload(payload)
        assert [entry["list_name"] for entry in entries] == ["Fiction", "Nonfiction"]
        assert all(entry["bestsellers_date"] == "2024-03-02" for entry in entries)

    def test_single_object_passes_through(self):
        payload = google_volume()
        assert split_payload(payload) == [payload]

    def test_scalar_raises(self):
        with pytest.raises(FormatError):
            split_payload(42)


def _wrapped(volume, *, encode_twice=False):
    raw = json.dumps(volume)
    if encode_twice:
        raw = json.dumps(raw)
    return {"id": volume["id"], "title": volume["id"], "rawJsonResponse": raw}


class TestUnwrapPreprocessed:
    """Earlier exports kept the untouched provider response as a string."""

    def test_wrapper_yields_the_inner_volume(self):
        volume = google_volume(volume_id="abc123XYZ")
        document = extract_document(_wrapped(volume), source_key="books/v1/abc123XYZ.json")

        assert document.format is SourceFormat.PRIMARY_PROVIDER
        assert document.source is ProviderSource.GOOGLE_BOOKS
        assert document.title == "The Sample Book"
        assert document.isbn13 == "9780000000001"
        assert document.provider_id == "abc123XYZ"

    def test_doubly_encoded_response(self):
        volume = google_volume(volume_id="abc123XYZ")
        assert unwrap_preprocessed(_wrapped(volume, encode_twice=True)) == volume

    def test_split_payload_unwraps_array_members(self):
        volume = google_volume(volume_id="abc123XYZ")
        assert split_payload([_wrapped(volume)]) == [volume]

    @pytest.mark.parametrize(
        "payload",
        [
            {"id": "a", "title": "A real title", "rawJsonResponse": "{}"},
            {"id": "a", "title": "a", "rawJsonResponse": "{not json"},
            {"id": "a", "title": "a", "rawJsonResponse": json.dumps({"unrelated": True})},
            {"id": "a", "title": "a", "volumeInfo": {"title": "T"}, "rawJsonResponse": "{}"},
        ],
    )
    def test_other_shapes_are_left_alone(self, payload):
        assert unwrap_preprocessed(payload) is payload


class TestDedupeEntries:
    def test_volumes_sharing_an_isbn_collapse_to_the_first(self):
        first = google_volume(volume_id="a", isbn13="9780000000021")
        again = google_volume(volume_id="b", isbn13="9780000000021", title="Reprint")
        other = google_volume(volume_id="c", isbn13="9780000000022")
        assert dedupe_entries([first, again, other]) == [first, other]

    def test_isbn10_is_used_when_there_is_no_isbn13(self):
        volume = google_volume(isbn13=None, isbn10="0000000021")
        assert entry_key(volume) == "isbn10:0000000021"

    def test_title_and_first_author_without_isbns(self):
        first = google_volume(volume_id="a", isbn13=None, title="Same Book", authors=["Ada", "Bo"])
        again = google_volume(volume_id="b", isbn13=None, title="SAME BOOK", authors=["ada"])
        assert entry_key(first) == "same book:ada"
        assert dedupe_entries([first, again]) == [first]

    def test_other_shapes_only_drop_exact_repeats(self):
        entries = [bestseller_entry(rank=1), bestseller_entry(rank=1), bestseller_entry(rank=2)]
        assert dedupe_entries(entries) == [entries[0], entries[2]]
