from __future__ import annotations
"""SDK-facing operations: cloud box listing and append uploads."""
import logging
import os
from typing import Callable, Optional
from urllib.parse import quote
from xml.etree import ElementTree

import boto3
from botocore.auth import HmacV1Auth, S3SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.client import Config
from botocore.credentials import Credentials
from botocore.exceptions import BotoCoreError, ClientError
from botocore.httpsession import URLLib3Session

from .models import CloudBox, CloudBoxPage, ConnectionOptions
from .transfer import ProgressFn, ProgressReader
from .utils import headers_to_put_params

LOGGER = logging.getLogger(__name__)

NEXT_POSITION_HEADER = "x-oss-next-append-position"
NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
SERVICE_ERRORS = (ClientError, BotoCoreError)


class MissingRegionError(BotoCoreError):
    fmt = "Signature version v4 requires a region, use --region"


class ResponseParseError(BotoCoreError):
    fmt = "Unable to parse {operation} response (HTTP {status_code}): {error}"


def _proxies(proxy_host: str | None) -> dict[str, str] | None:
    if not proxy_host:
        return None
    return {"http": proxy_host, "https": proxy_host}


def _findtext(element: ElementTree.Element, tag: str) -> str:
    return (element.findtext(tag) or "").strip()


def parse_list_cloud_box_result(body: bytes) -> dict:
    """Turn a ``ListCloudBoxResult`` document into a boto-style response dict."""

    root = ElementTree.fromstring(body)
    boxes = [
        {
            "ID": _findtext(node, "ID"),
            "Name": _findtext(node, "Name"),
            "Owner": _findtext(node, "Owner"),
            "Region": _findtext(node, "Region"),
            "ControlEndpoint": _findtext(node, "ControlEndpoint"),
            "DataEndpoint": _findtext(node, "DataEndpoint"),
        }
        for node in root.iter("CloudBox")
    ]
    return {
        "Prefix": _findtext(root, "Prefix"),
        "Marker": _findtext(root, "Marker"),
        "NextMarker": _findtext(root, "NextMarker"),
        "IsTruncated": _findtext(root, "IsTruncated").lower() == "true",
        "CloudBoxes": boxes,
    }


def parse_error_response(body: bytes, status_code: int) -> dict:
    error = {"Code": str(status_code), "Message": ""}
    try:
        root = ElementTree.fromstring(body)
    except ElementTree.ParseError:
        error["Message"] = body.decode("utf-8", errors="replace").strip()
    else:
        error["Code"] = _findtext(root, "Code") or error["Code"]
        error["Message"] = _findtext(root, "Message")
        request_id = _findtext(root, "RequestId")
        if request_id:
            error["RequestId"] = request_id
    return {"Error": error, "ResponseMetadata": {"HTTPStatusCode": status_code}}


class CloudBoxClient:
    """Signs and sends ``GET /?cloudboxes`` requests with botocore."""

    def __init__(self, connection: ConnectionOptions, http_session=None):
        if connection.sign_version == "v4" and not connection.region:
            raise MissingRegionError()
        self._connection = connection
        self._credentials = Credentials(
            connection.access_key,
            connection.secret_key,
            connection.sts_token or None,
        )
        self._session = http_session or URLLib3Session(
            verify=connection.verify,
            proxies=_proxies(connection.proxy_host),
            timeout=(connection.connect_timeout, connection.read_timeout),
        )

    def list_cloud_boxes(self, *, Prefix: str = "", Marker: str = "", MaxKeys: int | None = None) -> dict:
        query = ["cloudboxes"]
        if Prefix:
            query.append(f"prefix={quote(Prefix, safe='')}")
        if Marker:
            query.append(f"marker={quote(Marker, safe='')}")
        if MaxKeys:
            query.append(f"max-keys={int(MaxKeys)}")
        url = f"{self._connection.endpoint_url.rstrip('/')}/?{'&'.join(query)}"

        headers = {}
        if self._connection.user_agent:
            headers["User-Agent"] = self._connection.user_agent
        request = AWSRequest(method="GET", url=url, headers=headers)
        self._signer().add_auth(request)
        LOGGER.debug("GET %s", url)
        response = self._session.send(request.prepare())
        if response.status_code >= 300:
            raise ClientError(parse_error_response(response.content, response.status_code), "ListCloudBoxes")
        try:
            return parse_list_cloud_box_result(response.content)
        except ElementTree.ParseError as exc:
            raise ResponseParseError(
                operation="ListCloudBoxes",
                status_code=response.status_code,
                error=exc,
            ) from exc

    def close(self) -> None:
        self._session.close()

    def _signer(self):
        if self._connection.sign_version == "v4":
            return S3SigV4Auth(self._credentials, "s3", self._connection.region)
        return HmacV1Auth(self._credentials)


class OSSService:
    """Wraps the SDK calls used by the commands."""

    def __init__(
        self,
        client_factory: Callable[..., object] | None = None,
        cloud_box_client_factory: Callable[[ConnectionOptions], object] | None = None,
    ):
        self._client_factory = client_factory or boto3.client
        self._cloud_box_client_factory = cloud_box_client_factory or CloudBoxClient

    def list_cloud_boxes(
        self,
        *,
        connection: ConnectionOptions,
        prefix: str = "",
        marker: str = "",
        retry_times: int = 1,
    ) -> CloudBoxPage:
        """Fetch one page of cloud boxes, resubmitting failed requests immediately.

        Every attempt reuses the same prefix and marker. The last error is
        raised once ``retry_times`` attempts have failed.

        Raises:
            BotoCoreError | ClientError: when the final attempt fails.
        """
        client = self._cloud_box_client_factory(connection)
        try:
            attempt = 1
            while True:
                try:
                    response = client.list_cloud_boxes(Prefix=prefix, Marker=marker)
                except SERVICE_ERRORS as exc:
                    if attempt >= retry_times:
                        raise
                    LOGGER.warning("List cloud boxes attempt %d of %d failed: %s", attempt, retry_times, exc)
                    attempt += 1
                    continue
                return self._build_page(response)
        finally:
            client.close()

    def object_exists(self, *, connection: ConnectionOptions, bucket_name: str, key: str) -> bool:
        client = self._create_client(connection)
        try:
            client.head_object(Bucket=bucket_name, Key=key)
        except ClientError as exc:
            error = exc.response.get("Error", {})
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            if error.get("Code") in NOT_FOUND_CODES or status == 404:
                return False
            raise
        return True

    def get_object_length(self, *, connection: ConnectionOptions, bucket_name: str, key: str) -> int:
        client = self._create_client(connection)
        response = client.head_object(Bucket=bucket_name, Key=key)
        try:
            return int(response.get("ContentLength"))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"invalid Content-Length for oss://{bucket_name}/{key}") from exc

    def append_object(
        self,
        *,
        connection: ConnectionOptions,
        bucket_name: str,
        key: str,
        source_path: str,
        position: int,
        headers: dict[str, str] | None = None,
        progress_callback: Optional[ProgressFn] = None,
        max_speed_kb: int = 0,
    ) -> int:
        """Append ``source_path`` at ``position`` and return the new object length."""

        params = headers_to_put_params(headers or {})
        client = self._create_client(connection)
        client.meta.events.register(
            "before-sign.s3.PutObject",
            self._append_handler(position),
            unique_id="pyoss-append-object",
        )
        size = os.path.getsize(source_path)
        LOGGER.debug("Appending %d byte(s) to oss://%s/%s at %d", size, bucket_name, key, position)
        with open(source_path, "rb") as handle:
            body = ProgressReader(
                handle,
                size,
                callback=progress_callback,
                max_speed_kb=max_speed_kb,
                active=False,
            )
            # signing may read the body to hash it; only the transmission counts
            client.meta.events.register(
                "before-send.s3.PutObject",
                self._activate_handler(body),
                unique_id="pyoss-append-progress",
            )
            response = client.put_object(
                Bucket=bucket_name,
                Key=key,
                Body=body,
                ContentLength=size,
                **params,
            )
        http_headers = response.get("ResponseMetadata", {}).get("HTTPHeaders", {})
        next_position = http_headers.get(NEXT_POSITION_HEADER)
        if next_position:
            return int(next_position)
        return position + size

    def _create_client(self, connection: ConnectionOptions):
        config = Config(
            signature_version="s3v4" if connection.sign_version == "v4" else "s3",
            region_name=connection.region or None,
            connect_timeout=connection.connect_timeout,
            read_timeout=connection.read_timeout,
            proxies=_proxies(connection.proxy_host),
            user_agent_extra=connection.user_agent,
            retries={"total_max_attempts": 1},
            s3={"addressing_style": "virtual"},
            request_checksum_calculation="when_required",
            response_checksum_validation="when_required",
        )
        return self._client_factory(
            "s3",
            endpoint_url=connection.endpoint_url,
            aws_access_key_id=connection.access_key,
            aws_secret_access_key=connection.secret_key,
            aws_session_token=connection.sts_token or None,
            verify=connection.verify,
            config=config,
        )

    @staticmethod
    def _append_handler(position: int):
        def _handler(request, **_kwargs) -> None:
            # OSS appends are POST ?append&position=N with a PutObject body
            separator = "&" if "?" in request.url else "?"
            request.method = "POST"
            request.url = f"{request.url}{separator}append&position={int(position)}"

        return _handler

    @staticmethod
    def _activate_handler(body: ProgressReader):
        def _handler(**_kwargs) -> None:
            body.activate()

        return _handler

    @staticmethod
    def _build_page(response: dict) -> CloudBoxPage:
        boxes = [
            CloudBox(
                id=entry.get("ID", ""),
                name=entry.get("Name", ""),
                owner=entry.get("Owner", ""),
                region=entry.get("Region", ""),
                control_endpoint=entry.get("ControlEndpoint", ""),
                data_endpoint=entry.get("DataEndpoint", ""),
            )
            for entry in response.get("CloudBoxes", [])
        ]
        return CloudBoxPage(
            prefix=response.get("Prefix", "") or "",
            marker=response.get("Marker", "") or "",
            next_marker=response.get("NextMarker", "") or "",
            is_truncated=bool(response.get("IsTruncated", False)),
            cloud_boxes=boxes,
        )
