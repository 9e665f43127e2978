from typing import Optional
from urllib.parse import urlparse

from visitor_intent.models.tracking import ReferrerType


PAID_MEDIUMS = {"cpc", "ppc", "paid", "paidsearch", "paidsocial"}
EMAIL_MEDIUMS = {"email", "newsletter"}
SEARCH_ENGINES = ("google", "bing", "yahoo", "duckduckgo", "baidu", "yandex")
SOCIAL_NETWORKS = ("facebook", "twitter", "linkedin", "instagram", "pinterest", "tiktok", "youtube")

BOT_SIGNATURES = ("bot", "crawler", "spider", "slurp", "facebookexternalhit", "headless")

# Checked in order: Edge and Opera also advertise Chrome, Chrome advertises Safari.
BROWSER_SIGNATURES = (
    ("Edge", ("edg/", "edge/")),
    ("Opera", ("opr/", "opera")),
    ("Samsung Internet", ("samsungbrowser/",)),
    ("Firefox", ("firefox/", "fxios/")),
    ("Chrome", ("chrome/", "crios/")),
    ("Safari", ("safari/",)),
)

OS_SIGNATURES = (
    ("iOS", ("iphone", "ipad", "ipod")),
    ("Android", ("android",)),
    ("Windows", ("windows",)),
    ("OS X", ("macintosh", "mac os")),
    ("Linux", ("linux", "x11")),
)


def referrer_domain(referrer_url: Optional[str]) -> Optional[str]:
    if not referrer_url:
        return None
    host = (urlparse(referrer_url).hostname or "").lower().strip()
    return host or None


def classify_referrer(
    domain: Optional[str],
    utm_medium: Optional[str] = None,
    utm_source: Optional[str] = None,
) -> str:
    if not domain:
        return ReferrerType.DIRECT.value

    if utm_medium:
        medium = utm_medium.strip().lower()
        if medium in PAID_MEDIUMS:
            return ReferrerType.PAID.value
        if medium in EMAIL_MEDIUMS:
            return ReferrerType.EMAIL.value

    domain = domain.lower()
    if any(engine in domain for engine in SEARCH_ENGINES):
        return ReferrerType.PAID.value if utm_source else ReferrerType.ORGANIC.value
    if any(network in domain for network in SOCIAL_NETWORKS):
        return ReferrerType.SOCIAL.value
    return ReferrerType.REFERRAL.value


def _version_after(ua: str, token: str) -> Optional[str]:
    idx = ua.find(token)
    if idx < 0:
        return None
    tail = ua[idx + len(token):].lstrip("/ ")
    version = ""
    for char in tail:
        if char.isdigit() or char in "._":
            version += char
        else:
            break
    return version.replace("_", ".").strip(".") or None


def parse_user_agent(user_agent: Optional[str]) -> dict[str, Optional[str] | bool]:
    ua = (user_agent or "").lower()

    if "ipad" in ua or "tablet" in ua or ("android" in ua and "mobile" not in ua):
        device_type = "tablet"
    elif "mobi" in ua or "iphone" in ua or "ipod" in ua:
        device_type = "mobile"
    else:
        device_type = "desktop"

    browser = None
    browser_version = None
    for name, tokens in BROWSER_SIGNATURES:
        token = next((t for t in tokens if t in ua), None)
        if token:
            browser = name
            if name == "Safari":
                browser_version = _version_after(ua, "version/")
            else:
                browser_version = _version_after(ua, token)
            break

    os_name = None
    os_version = None
    for name, tokens in OS_SIGNATURES:
        if any(t in ua for t in tokens):
            os_name = name
            if name == "iOS":
                os_version = _version_after(ua, " os ")
            elif name == "Android":
                os_version = _version_after(ua, "android")
            elif name == "Windows":
                os_version = _version_after(ua, "windows nt")
            elif name == "OS X":
                os_version = _version_after(ua, "mac os x")
            break

    return {
        "device_type": device_type,
        "browser": browser,
        "browser_version": browser_version,
        "os": os_name,
        "os_version": os_version,
        "is_bot": any(signature in ua for signature in BOT_SIGNATURES),
    }
