from __future__ import annotations
"""Parsing and formatting helpers shared by the command handlers."""
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, metadata, version
import re
from urllib.parse import unquote

from .models import CloudBox, CloudUrl

DIST_NAME = "pyoss-cli"
SCHEME_PREFIX = "oss://"
URL_ENCODING_TYPE = "url"
MAX_APPEND_OBJECT_SIZE = 5 * 1024 * 1024 * 1024

META_PREFIXES = ("x-oss-meta-", "x-amz-meta-")
HEADER_PARAMS = {
    "cache-control": "CacheControl",
    "content-disposition": "ContentDisposition",
    "content-encoding": "ContentEncoding",
    "content-language": "ContentLanguage",
    "content-type": "ContentType",
    "expires": "Expires",
}

CLOUD_BOX_ROW = "{:<30} {:>20} {:<20} {:>12} {:<40} {}"

_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


@dataclass(frozen=True)
class PackageInfo:
    name: str
    version: str
    summary: str


def load_package_info(dist_name: str = DIST_NAME) -> PackageInfo:
    try:
        distribution_metadata = metadata(dist_name)
        package_version = version(dist_name)
    except PackageNotFoundError:
        return PackageInfo(
            name="pyoss",
            version="",
            summary="Command line tools for OSS cloud boxes and append objects.",
        )
    return PackageInfo(
        name=distribution_metadata.get("Name"),
        version=package_version,
        summary=distribution_metadata.get("Summary") or "",
    )


def check_encoding_type(encoding_type: str | None) -> str:
    value = (encoding_type or "").strip().lower()
    if value and value != URL_ENCODING_TYPE:
        raise ValueError(f"invalid encoding type: {encoding_type}, only '{URL_ENCODING_TYPE}' is supported")
    return value


def decode_url_component(value: str) -> str:
    """Percent-decode ``value``, rejecting malformed escapes.

    :func:`urllib.parse.unquote` leaves broken sequences such as ``%zz`` in
    place, so they are detected up front.
    """

    match = _BAD_ESCAPE.search(value)
    if match:
        raise ValueError(f"invalid URL escape {value[match.start():match.start() + 3]!r}")
    return unquote(value, errors="strict")


def parse_cloud_url(url: str, encoding_type: str = "") -> CloudUrl:
    """Split ``oss://bucket/key`` into its bucket and object key."""

    raw = url.strip()
    if encoding_type == URL_ENCODING_TYPE:
        raw = decode_url_component(raw)
    if not raw.lower().startswith(SCHEME_PREFIX):
        raise ValueError(f"invalid cloud url: {url}, please make sure the url starts with: {SCHEME_PREFIX}")
    path = raw[len(SCHEME_PREFIX):]
    bucket, _, key = path.partition("/")
    if "\\" in bucket:
        raise ValueError(f"invalid bucket name: {bucket}")
    return CloudUrl(bucket=bucket, key=key)


def decode_marker(marker: str | None) -> str:
    if not marker:
        return ""
    try:
        return decode_url_component(marker)
    except (UnicodeDecodeError, ValueError) as exc:
        raise ValueError(f"invalid marker: {marker}, marker is not url encoded, {exc}") from exc


def parse_meta_headers(meta: str | None) -> dict[str, str]:
    """Parse ``Header:value#Header:value`` into an ordered mapping."""

    headers: dict[str, str] = {}
    if not meta:
        return headers
    for item in meta.split("#"):
        if not item.strip():
            continue
        name, sep, value = item.partition(":")
        name = name.strip()
        if not sep or not name:
            raise ValueError(f"invalid meta item: {item!r}, expected Header:value")
        headers[name] = value.strip()
    return headers


def headers_to_put_params(headers: dict[str, str]) -> dict[str, object]:
    """Translate parsed headers into ``put_object`` keyword arguments."""

    params: dict[str, object] = {}
    user_metadata: dict[str, str] = {}
    for name, value in headers.items():
        lowered = name.lower()
        prefix = next((p for p in META_PREFIXES if lowered.startswith(p)), None)
        if prefix:
            meta_key = lowered[len(prefix):]
            if not meta_key:
                raise ValueError(f"invalid meta header: {name}")
            user_metadata[meta_key] = value
            continue
        param = HEADER_PARAMS.get(lowered)
        if param is None:
            raise ValueError(f"unsupported header: {name}")
        params[param] = value
    if user_metadata:
        params["Metadata"] = user_metadata
    return params


def format_cloud_box_header() -> str:
    return CLOUD_BOX_ROW.format("ID", "Name", "Owner", "Region", "ControlEndpoint", "DataEndpoint")


def format_cloud_box(box: CloudBox) -> str:
    return CLOUD_BOX_ROW.format(
        box.id,
        box.name,
        box.owner,
        box.region,
        box.control_endpoint,
        box.data_endpoint,
    )


def kb_per_second(size: int, elapsed_ms: float) -> float:
    # bytes per millisecond is close enough to KB/s for progress output
    if elapsed_ms <= 0:
        return float(size)
    return size / elapsed_ms
