from __future__ import annotations
"""Resolves connection settings and forwards command calls to the service."""

import logging
import os
from typing import Mapping, Optional

from .models import CloudBoxPage, ConnectionOptions
from .profiles import ConnectionProfile, ProfileStorage
from .services import OSSService
from .settings import AppSettings
from .transfer import ProgressFn

LOGGER = logging.getLogger(__name__)

ENV_ENDPOINT = "OSS_ENDPOINT"
ENV_ACCESS_KEY_ID = "OSS_ACCESS_KEY_ID"
ENV_ACCESS_KEY_SECRET = "OSS_ACCESS_KEY_SECRET"
ENV_SESSION_TOKEN = "OSS_SESSION_TOKEN"
ENV_REGION = "OSS_REGION"


class ConnectionConfigError(RuntimeError):
    """Raised when no usable endpoint or credentials can be resolved."""


class NotConnectedError(RuntimeError):
    """Raised when an OSS operation is attempted before a connection is resolved."""


def normalize_endpoint(endpoint: str) -> str:
    endpoint = endpoint.strip().rstrip("/")
    if not endpoint:
        return endpoint
    if "://" not in endpoint:
        endpoint = f"http://{endpoint}"
    return endpoint


class OSSController:
    """Shared client-construction collaborator for every command."""

    def __init__(
        self,
        service: OSSService | None = None,
        storage: ProfileStorage | None = None,
        settings: AppSettings | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        self._service = service or OSSService()
        self._storage = storage or ProfileStorage()
        self._settings = settings or AppSettings()
        self._environ = os.environ if environ is None else environ
        self._connection: ConnectionOptions | None = None
        self._profiles: list[ConnectionProfile] | None = None

    @property
    def settings(self) -> AppSettings:
        return self._settings

    def list_profiles(self) -> list[ConnectionProfile]:
        return list(self._load_profiles())

    def get_profile(self, name: str) -> ConnectionProfile:
        for profile in self._load_profiles():
            if profile.name == name:
                return profile
        raise ValueError(f"Profile '{name}' does not exist")

    def save_profile(self, profile: ConnectionProfile) -> None:
        profiles = self._load_profiles()
        for idx, existing in enumerate(profiles):
            if existing.name == profile.name:
                profiles[idx] = profile
                break
        else:
            profiles.append(profile)
        self._storage.save(profiles)

    def delete_profile(self, name: str) -> None:
        profiles = self._load_profiles()
        remaining = [p for p in profiles if p.name != name]
        if len(remaining) == len(profiles):
            raise ValueError(f"Profile '{name}' does not exist")
        self._profiles = remaining
        self._storage.save(remaining)

    def connect(
        self,
        *,
        profile_name: str | None = None,
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        sts_token: str | None = None,
        region: str | None = None,
        sign_version: str | None = None,
        connect_timeout: int | None = None,
        read_timeout: int | None = None,
        proxy_host: str | None = None,
        skip_verify_cert: bool = False,
        user_agent: str | None = None,
    ) -> ConnectionOptions:
        """Resolve flags, then the profile, then the environment into a connection."""

        profile = self._select_profile(profile_name)
        env = self._environ

        endpoint = endpoint_url or (profile.endpoint_url if profile else "") or env.get(ENV_ENDPOINT, "")
        endpoint = normalize_endpoint(endpoint)
        if not endpoint:
            raise ConnectionConfigError(
                "endpoint is required, use --endpoint, a saved profile or the "
                f"{ENV_ENDPOINT} environment variable"
            )

        if access_key:
            key_id, key_secret = access_key, secret_key or ""
        elif profile:
            key_id, key_secret = profile.access_key, secret_key or profile.secret_key
        else:
            key_id = env.get(ENV_ACCESS_KEY_ID, "")
            key_secret = secret_key or env.get(ENV_ACCESS_KEY_SECRET, "")
        if not key_id or not key_secret:
            raise ConnectionConfigError("access key id and access key secret are required")

        connection = ConnectionOptions(
            endpoint_url=endpoint,
            access_key=key_id,
            secret_key=key_secret,
            sts_token=sts_token or env.get(ENV_SESSION_TOKEN) or None,
            region=region or (profile.region if profile else "") or env.get(ENV_REGION) or None,
            sign_version=(sign_version or self._settings.sign_version).lower(),
            connect_timeout=connect_timeout or self._settings.connect_timeout,
            read_timeout=read_timeout or self._settings.read_timeout,
            proxy_host=proxy_host or None,
            verify=not skip_verify_cert,
            user_agent=user_agent or None,
        )
        LOGGER.debug(
            "Resolved connection endpoint=%s access_key=%s profile=%s sign_version=%s",
            connection.endpoint_url,
            connection.access_key,
            profile.name if profile else None,
            connection.sign_version,
        )
        self._connection = connection
        return connection

    def list_cloud_boxes(self, *, prefix: str = "", marker: str = "", retry_times: int = 1) -> CloudBoxPage:
        connection = self._require_connection()
        return self._service.list_cloud_boxes(
            connection=connection,
            prefix=prefix,
            marker=marker,
            retry_times=retry_times,
        )

    def object_exists(self, *, bucket_name: str, key: str) -> bool:
        connection = self._require_connection()
        return self._service.object_exists(connection=connection, bucket_name=bucket_name, key=key)

    def get_object_length(self, *, bucket_name: str, key: str) -> int:
        connection = self._require_connection()
        return self._service.get_object_length(connection=connection, bucket_name=bucket_name, key=key)

    def append_object(
        self,
        *,
        bucket_name: str,
        key: str,
        source_path: str,
        position: int,
        headers: dict[str, str] | None = None,
        progress_callback: Optional[ProgressFn] = None,
        max_speed_kb: int = 0,
    ) -> int:
        connection = self._require_connection()
        return self._service.append_object(
            connection=connection,
            bucket_name=bucket_name,
            key=key,
            source_path=source_path,
            position=position,
            headers=headers,
            progress_callback=progress_callback,
            max_speed_kb=max_speed_kb,
        )

    def _select_profile(self, profile_name: str | None) -> ConnectionProfile | None:
        if profile_name:
            return self.get_profile(profile_name)
        default_name = self._settings.default_profile
        if not default_name:
            return None
        for profile in self._load_profiles():
            if profile.name == default_name:
                return profile
        LOGGER.warning("Default profile '%s' does not exist", default_name)
        return None

    def _load_profiles(self) -> list[ConnectionProfile]:
        if self._profiles is None:
            self._profiles = self._storage.load()
        return self._profiles

    def _require_connection(self) -> ConnectionOptions:
        if not self._connection:
            raise NotConnectedError("Not connected to OSS")
        return self._connection
