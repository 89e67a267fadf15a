import pytest

from doc_centralizer.core.scraping.normalizer import (
    UrlResolutionError,
    extract_base_url,
    is_skippable,
    match_key,
    normalize_url,
    resolve_url,
)


@pytest.mark.parametrize(
    "href",
    ["#top", "mailto:a@b.com", "tel:+551199", "javascript:void(0)", "data:text/plain,x", "", "  "],
)
def test_skippable_targets(href):
    assert is_skippable(href)


def test_regular_link_is_not_skippable():
    assert not is_skippable("https://a.com/f.pdf")


def test_protocol_relative_becomes_https():
    assert resolve_url("//cdn.example.com/f.pdf") == "https://cdn.example.com/f.pdf"


def test_relative_needs_base():
    with pytest.raises(UrlResolutionError) as exc:
        resolve_url("/files/f.pdf")
    assert exc.value.needs_base is True
    assert resolve_url("/files/f.pdf", "https://site.org/page/") == "https://site.org/files/f.pdf"


def test_other_schemes_are_rejected():
    with pytest.raises(UrlResolutionError):
        resolve_url("ftp://files.example.com/f.pdf")


def test_normalize_url_canonical_form():
    url = "HTTPS://Files.Example.COM:443/Docs/My File.pdf?v=2#page=3"
    assert normalize_url(url) == "https://files.example.com/Docs/My%20File.pdf?v=2"


def test_normalize_url_keeps_existing_escapes_and_custom_port():
    assert (
        normalize_url("http://a.com:8080/a%20b.pdf")
        == "http://a.com:8080/a%20b.pdf"
    )
    assert normalize_url("http://a.com") == "http://a.com/"


def test_match_key_equivalences():
    base = match_key("https://a.com/docs/My%20File.pdf")
    assert match_key("https://A.COM/docs/my file.pdf") == base
    assert match_key("https://a.com/docs/My%20File.pdf/") == base
    assert match_key("https://a.com/docs/My%20File.pdf#page=2") == base
    assert match_key("https://a.com:443/docs/My%20File.pdf") == base


def test_match_key_query_and_fragment_flags():
    with_query = match_key("https://a.com/f.pdf?v=1")
    assert with_query != match_key("https://a.com/f.pdf")
    assert match_key("https://a.com/f.pdf?v=1", match_query_params=False) == match_key(
        "https://a.com/f.pdf"
    )
    assert match_key("https://a.com/f.pdf#x", match_fragments=True) != match_key(
        "https://a.com/f.pdf", match_fragments=True
    )


def test_match_key_case_sensitive():
    assert match_key("https://a.com/F.pdf", case_sensitive=True) != match_key(
        "https://a.com/f.pdf", case_sensitive=True
    )


def test_match_key_resolves_relative_against_base():
    assert match_key("/f.pdf", base_url="https://a.com/page/") == match_key(
        "https://a.com/f.pdf"
    )


def test_match_key_undecodable_escape_raises():
    with pytest.raises(UnicodeDecodeError):
        match_key("https://a.com/%ff.pdf")
    assert match_key("https://a.com/%ff.pdf", decode=False) == "https://a.com/%ff.pdf"


def test_extract_base_url():
    assert extract_base_url("https://a.com/x/y/page.html?q=1") == "https://a.com/x/y/"
    with pytest.raises(UrlResolutionError):
        extract_base_url("not a url")
