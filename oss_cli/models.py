from __future__ import annotations
"""Data models shared by the OSS commands."""
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class CloudBox:
    """A single cloud box entry returned by the control endpoint."""

    id: str
    name: str = ""
    owner: str = ""
    region: str = ""
    control_endpoint: str = ""
    data_endpoint: str = ""


@dataclass
class CloudBoxPage:
    """One page of a cloud box listing."""

    prefix: str = ""
    marker: str = ""
    next_marker: str = ""
    is_truncated: bool = False
    cloud_boxes: list[CloudBox] = field(default_factory=list)


@dataclass(frozen=True)
class CloudUrl:
    """A parsed ``oss://bucket/object`` location."""

    bucket: str
    key: str = ""


@dataclass(frozen=True)
class ConnectionOptions:
    """Resolved endpoint, credentials and transport settings."""

    endpoint_url: str
    access_key: str
    secret_key: str
    sts_token: Optional[str] = None
    region: Optional[str] = None
    sign_version: str = "v1"
    connect_timeout: int = 120
    read_timeout: int = 1200
    proxy_host: Optional[str] = None
    verify: bool = True
    user_agent: Optional[str] = None
