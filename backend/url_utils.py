from urllib.parse import urlparse, urlunparse


def origin_of(url: str) -> str:
    """
    ``scheme://host[:port]`` of a URL, the key web storage is scoped by.
    Returns "" for URLs without a network location (about:blank, data:).
    """
    parsed = urlparse(url or "")
    if not parsed.scheme or not parsed.netloc:
        return ""
    return f"{parsed.scheme}://{parsed.netloc}"


def redact_url(url: str) -> str:
    """
    Drop query string and fragment before a URL goes into a log line.
    Login redirects and approval links can carry one-time tokens there.
    """
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.query and not parsed.fragment:
        return url
    return urlunparse((parsed.scheme, parsed.netloc, parsed.path, "", "", "")) + "?…"
