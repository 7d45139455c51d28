from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

TRACKING_KEYS = {"ref", "fbclid", "gclid", "mc_cid", "mc_eid"}
ALLOWED_SCHEMES = {"http", "https"}


def _is_tracking_param(key: str) -> bool:
    return key.lower().startswith("utm_") or key.lower() in TRACKING_KEYS


def normalize_subject_url(raw_url: str) -> str:
    """Canonical form of a submitted company URL, used as the uniqueness key for jobs."""
    candidate = raw_url.strip()
    if candidate and "://" not in candidate:
        candidate = f"https://{candidate}"
    parsed = urlparse(candidate)

    scheme = parsed.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        raise ValueError(f"unsupported url scheme: {parsed.scheme or '<none>'}")

    netloc = parsed.netloc.lower()
    if "@" in netloc:
        raise ValueError("credentials are not allowed in subject urls")
    if ":" in netloc:
        host, port = netloc.rsplit(":", maxsplit=1)
        if (scheme == "http" and port == "80") or (scheme == "https" and port == "443"):
            netloc = host
    if not netloc or netloc.startswith(":"):
        raise ValueError("url must include a host")

    path = parsed.path
    if path.endswith("/"):
        path = path.rstrip("/")

    filtered_query_pairs = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not _is_tracking_param(key)
    ]
    filtered_query_pairs.sort(key=lambda pair: pair[0])
    query = urlencode(filtered_query_pairs, doseq=True)

    return urlunparse((scheme, netloc, path, "", query, ""))
