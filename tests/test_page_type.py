import pytest

from visitor_intent.services.page_view_service import PAGE_TYPE_PATTERNS, determine_page_type


@pytest.mark.parametrize(
    "path,expected",
    [
        ("", "home"),
        ("/", "home"),
        ("/es", "home"),
        ("/es/", "home"),
        ("/es/servicios/web", "services"),
        ("/services/seo", "services"),
        ("/our-work", "portfolio"),
        ("/projects/acme", "portfolio"),
        ("/about-us", "about"),
        ("/es/contacto", "contact"),
        ("/get-started", "contact"),
        ("/blog/some-post", "blog"),
        ("/pricing", "pricing"),
        ("/es/precios", "pricing"),
        ("/industries/healthcare", "industries"),
        ("/terms", "privacy"),
        ("/random-page", "other"),
    ],
)
def test_determine_page_type_examples(path, expected):
    assert determine_page_type(path) == expected


def test_determine_page_type_is_case_insensitive():
    assert determine_page_type("/PRICING/") == "pricing"


def test_determine_page_type_first_match_wins():
    # "services" is checked before "pricing"
    assert determine_page_type("/services/pricing") == "services"
    # "portfolio" (via "work") is checked before "blog"
    assert determine_page_type("/blog/how-we-work") == "portfolio"


def test_determine_page_type_is_total_and_idempotent():
    categories = {name for name, _keywords in PAGE_TYPE_PATTERNS} | {"home", "other"}
    for path in ["", "/", "es", "/x/y/z", "/contact", "??", "/ñandú", None]:
        first = determine_page_type(path)
        assert first in categories
        assert determine_page_type(path) == first
