from __future__ import annotations

import pytest

from catalogue_cache.records import KIND_INDEX
from catalogue_cache.search import matches_search, normalize_loose, search_records
from fakes import (
    AUTHOR_NPUB,
    AUTHOR_PUBKEY,
    OTHER_PUBKEY,
    PUBKEY,
    encode_naddr,
    encode_nevent,
    encode_note,
    make_record,
)

BOOK = make_record(
    "les-miserables",
    kind=KIND_INDEX,
    pubkey=AUTHOR_PUBKEY,
    tags=[
        ["title", "Les Misérables"],
        ["author", "Victor Hugo"],
        ["summary", "A convict's redemption in nineteenth-century France."],
        ["p", OTHER_PUBKEY],
    ],
)


def test_normalize_loose_strips_accents_and_punctuation():
    assert normalize_loose("  Les Misérables -- Tome I ") == "les miserables tome i"


@pytest.mark.parametrize(
    "query",
    [
        "misérables",
        "miserables",
        "LES MIS",
        "victor",
        "nineteenth century",
        "les-miserables",
    ],
)
def test_text_queries_match(query: str):
    assert matches_search(BOOK, query)


@pytest.mark.parametrize("query", ["", "   ", "dickens", "!!!"])
def test_unrelated_or_empty_queries_do_not_match(query: str):
    assert not matches_search(BOOK, query)


def test_hex_id_and_pubkeys_match():
    assert matches_search(BOOK, BOOK.id.upper())
    assert matches_search(BOOK, AUTHOR_PUBKEY)
    assert matches_search(BOOK, OTHER_PUBKEY)
    assert not matches_search(BOOK, PUBKEY)


def test_nip19_entities_match():
    assert matches_search(BOOK, AUTHOR_NPUB)
    assert matches_search(BOOK, encode_note(BOOK.id))
    assert matches_search(BOOK, encode_nevent(BOOK.id, AUTHOR_PUBKEY))
    assert matches_search(BOOK, encode_naddr(KIND_INDEX, AUTHOR_PUBKEY, "les-miserables"))
    assert not matches_search(BOOK, encode_naddr(KIND_INDEX, AUTHOR_PUBKEY, "notre-dame"))


def test_undecodable_entity_falls_back_to_text():
    assert not matches_search(BOOK, "npub1notvalid")


def test_search_records_keeps_input_order():
    other = make_record("hugo-poems", kind=KIND_INDEX, tags=[["author", "Victor Hugo"]])
    unrelated = make_record("bleak-house", kind=KIND_INDEX, tags=[["title", "Bleak House"]])

    assert search_records([other, unrelated, BOOK], "hugo") == (other, BOOK)
