from cronwatch.monitor.text_fixes import (
    FALLBACK_SOURCES,
    count_paragraphs,
    decode_url_encoded_text,
    extract_sources_from_categories,
    find_markup_artifacts,
    has_markdown_link,
    has_url_encoded_text,
)


def test_decode_leaves_link_targets_alone():
    text = "Caf%C3%A9 opening on Main St. [Menu](https://example.com/menu%20items?q=a%2Fb) today"
    decoded = decode_url_encoded_text(text)
    assert decoded == "Café opening on Main St. [Menu](https://example.com/menu%20items?q=a%2Fb) today"


def test_decode_is_idempotent():
    text = "100%25 sure the new%20bakery is open"
    once = decode_url_encoded_text(text)
    twice = decode_url_encoded_text(once)
    assert once == twice
    assert "new bakery" in once


def test_decode_skips_bare_urls_and_plain_percentages():
    text = "Rents rose 5% see https://example.com/a%20b for details"
    assert has_url_encoded_text(text) is False
    assert decode_url_encoded_text(text) == text


def test_has_url_encoded_text_detects_prose_escapes():
    assert has_url_encoded_text("Hello%20world") is True
    assert has_url_encoded_text(None) is False
    assert has_url_encoded_text("[x](https://example.com/a%20b)") is False


def test_markdown_links_and_paragraphs():
    assert has_markdown_link("See [the menu](https://example.com/menu).") is True
    assert has_markdown_link("See https://example.com/menu") is False
    assert count_paragraphs("One.\n\nTwo.\n   \nThree.") == 3
    assert count_paragraphs("") == 0


def test_find_markup_artifacts():
    assert find_markup_artifacts("Plain prose with 3 < 4 comparisons") == []
    assert find_markup_artifacts("Hello <div>there</div> and <br> more") == ["br", "div"]
    assert find_markup_artifacts("Leak {'title': 'x', 'url': 'y'}") == ["serialized_data"]


def test_extract_sources_dedupes_and_types_handles():
    categories = [
        {
            "name": "Food",
            "stories": [
                {
                    "source": {"name": "Eater NY", "url": "https://ny.eater.com/x"},
                    "secondarySource": {"name": "@tribecacitizen", "url": "https://x.com/tribecacitizen"},
                },
                {"source": {"name": "eater ny", "url": "https://ny.eater.com/y"}},
                {"source": {"name": "Google result", "url": "https://www.google.com/search?q=x"}},
            ],
        }
    ]
    sources = extract_sources_from_categories(categories)
    assert [source["source_name"] for source in sources] == ["Eater NY", "@tribecacitizen", "Google result"]
    assert sources[1]["source_type"] == "x_user"
    assert sources[0]["source_type"] == "publication"
    assert sources[2]["source_url"] is None


def test_extract_sources_falls_back_to_platforms():
    assert extract_sources_from_categories(None) == FALLBACK_SOURCES
    assert extract_sources_from_categories([{"stories": [{"source": {"name": "  "}}]}]) == FALLBACK_SOURCES
