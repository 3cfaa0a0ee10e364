import re
from typing import Optional

from mitmproxy.net.http.headers import parse_content_type

_META_CHARSET = re.compile(rb"""<meta[^>]+charset=['"]?([^'">\s/]+)""", re.IGNORECASE)


def body_charset(content_type: str, body: bytes = b"") -> str:
    """
    Charset from the content-type header, then from an HTML <meta> tag.
    Defaults to UTF-8.
    """
    parsed = parse_content_type(content_type or "")
    if parsed and parsed[2].get("charset"):
        return parsed[2]["charset"]
    if "html" in (content_type or "").lower():
        match = _META_CHARSET.search(body[:4096])
        if match:
            return match.group(1).decode("ascii", "ignore")
    return "utf-8"


def decode_body(body: bytes, content_type: str) -> Optional[str]:
    """
    Returns None if the content isn't decodable with its declared charset,
    in which case callers leave the bytes alone.
    """
    if not body:
        return ""
    try:
        return body.decode(body_charset(content_type, body))
    except (LookupError, UnicodeDecodeError):
        return None


def encode_body(text: str, content_type: str, original: bytes = b"") -> bytes:
    charset = body_charset(content_type, original)
    try:
        return text.encode(charset)
    except UnicodeEncodeError:
        errors = "xmlcharrefreplace" if "html" in content_type.lower() else "replace"
        return text.encode(charset, errors)
