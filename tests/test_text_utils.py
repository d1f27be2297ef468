from chatgate.text_utils import (
    estimate_tokens,
    extract_json,
    normalize_for_compare,
    strip_edge_quotes,
    strip_trailing_punctuation,
    trim_facts_to_budget,
    trim_to_char_budget,
    trim_to_token_budget,
    trim_words,
)


def test_estimate_tokens_rounds_up():
    assert estimate_tokens("") == 0
    assert estimate_tokens(None) == 0
    assert estimate_tokens("abc") == 1
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_trim_to_char_budget_appends_ellipsis_within_limit():
    assert trim_to_char_budget("short", 10) == "short"
    trimmed = trim_to_char_budget("a" * 50, 10)
    assert trimmed == "aaaaaaa..."
    assert len(trimmed) == 10


def test_trim_to_token_budget_zero_budget_is_empty():
    assert trim_to_token_budget("anything", 0) == ""
    assert estimate_tokens(trim_to_token_budget("x" * 1000, 5)) <= 5


def test_trim_facts_to_budget_keeps_order_and_stops_at_budget():
    facts = ["a" * 8, "", "b" * 8, "c" * 8]
    assert trim_facts_to_budget(facts, 4) == ["a" * 8, "b" * 8]
    assert trim_facts_to_budget("not a list", 10) == []


def test_word_and_punctuation_helpers():
    assert trim_words("  one   two three four ", 2) == "one two"
    assert strip_edge_quotes('"Quoted title"') == "Quoted title"
    assert strip_trailing_punctuation("Really?!") == "Really"
    assert normalize_for_compare("Hello,   WORLD!") == "hello world"


def test_extract_json_finds_embedded_object():
    assert extract_json('Sure! {"title": "Rust async"} done') == {"title": "Rust async"}
    assert extract_json("no json here") is None
    assert extract_json("[1, 2]") is None
    assert extract_json("{broken") is None
