"""Session and process-wide configuration."""
import posixpath
import ssl
from enum import Enum
from functools import lru_cache
from typing import Optional
from urllib.parse import quote, unquote, urlsplit

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_FTP_PORT = 21
DEFAULT_FTPS_PORT = 990
DEFAULT_USERNAME = "anonymous"
DEFAULT_PASSWORD = "fileprovider@"


class FTPScheme(str, Enum):
    FTP = "ftp"
    FTPS = "ftps"
    FTPES = "ftpes"


class TransferMode(str, Enum):
    DEFAULT = "default"
    PASSIVE = "passive"
    EXTENDED_PASSIVE = "extended_passive"
    ACTIVE = "active"


class UploadStrategy(str, Enum):
    SERIAL = "serial"
    PARTED = "parted"


class TransportBackend(str, Enum):
    STREAMS = "streams"
    BUFFERED = "buffered"


class SessionResumingContext(ssl.SSLContext):
    """SSL context that can resume a previous session on the next handshake.

    asyncio creates its SSL objects through ``wrap_bio`` without a session
    argument, so the session to resume is staged on the context instead.
    """

    resume_session: Optional[ssl.SSLSession] = None

    def wrap_bio(self, incoming, outgoing, server_side=False, server_hostname=None, session=None):
        if session is None and not server_side:
            session = self.resume_session
        return super().wrap_bio(
            incoming,
            outgoing,
            server_side=server_side,
            server_hostname=server_hostname,
            session=session,
        )


class Credentials(BaseModel):
    """Login credentials for the control channel."""

    user: str = Field(DEFAULT_USERNAME, description="FTP user name")
    password: SecretStr = Field(SecretStr(DEFAULT_PASSWORD), description="FTP password")


class TLSTrustPolicy(BaseModel):
    """How server certificates are validated."""

    verify: bool = Field(True, description="Validate the server certificate chain")
    check_hostname: bool = Field(True, description="Match the certificate against the host name")
    ca_file: Optional[str] = Field(default=None, description="Extra CA bundle in PEM format")

    def create_context(self) -> SessionResumingContext:
        ctx = SessionResumingContext(ssl.PROTOCOL_TLS_CLIENT)
        if self.verify:
            ctx.load_default_certs(ssl.Purpose.SERVER_AUTH)
            if self.ca_file:
                ctx.load_verify_locations(cafile=self.ca_file)
            ctx.check_hostname = self.check_hostname
        else:
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        ctx.options |= ssl.OP_NO_COMPRESSION
        return ctx


class ProviderSettings(BaseSettings):
    """Process-wide defaults, overridable through FTP_PROVIDER_* variables."""

    model_config = SettingsConfigDict(env_prefix="FTP_PROVIDER_", extra="ignore")

    log_level: str = Field("INFO", description="Root logging level")
    log_wire_traffic: bool = Field(False, description="Log every control command and reply at DEBUG")
    request_timeout: float = Field(30.0, description="Seconds allowed for a command reply or data read")
    resource_timeout: float = Field(300.0, description="Seconds allowed for bulk writes and transfer completion")
    chunk_size: int = Field(64 * 1024, description="Serial upload and download read size")
    transport_backend: TransportBackend = Field(TransportBackend.STREAMS, description="Socket backend")
    max_connections: int = Field(4, description="Concurrent channel pairs for recursive listing")


@lru_cache(maxsize=None)
def get_settings() -> ProviderSettings:
    """Return the cached process-wide settings."""

    return ProviderSettings()


class SessionConfig(BaseModel):
    """Everything needed to open and drive one FTP session."""

    host: str = Field(..., description="Server host name or address")
    port: Optional[int] = Field(default=None, description="Control port; scheme default when omitted")
    scheme: FTPScheme = Field(FTPScheme.FTP, description="ftp, ftps (implicit TLS) or ftpes (explicit TLS)")
    base_path: str = Field("/", description="Server directory that listing paths are relative to")
    credentials: Credentials = Field(default_factory=Credentials)
    transfer_mode: TransferMode = Field(TransferMode.DEFAULT, description="Data channel setup policy")
    tls: TLSTrustPolicy = Field(default_factory=TLSTrustPolicy)
    secured_data_connection: bool = Field(True, description="Request PROT P instead of PROT C")
    upload_strategy: UploadStrategy = Field(UploadStrategy.SERIAL, description="Upload strategy")
    request_timeout: float = Field(30.0, gt=0)
    resource_timeout: float = Field(300.0, gt=0)
    chunk_size: int = Field(64 * 1024, gt=0)
    transport_backend: TransportBackend = Field(TransportBackend.STREAMS)
    encoding: str = Field("utf-8", description="Encoding of commands, replies and listings")
    max_connections: int = Field(4, ge=1)

    @field_validator("host")
    @classmethod
    def _validate_host(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Host is required")
        return value

    @field_validator("port")
    @classmethod
    def _validate_port(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and not 1 <= value <= 65535:
            raise ValueError(f"Port must be between 1 and 65535, got {value}")
        return value

    @field_validator("base_path")
    @classmethod
    def _normalize_base_path(cls, value: str) -> str:
        return posixpath.normpath("/" + value.strip().strip("/"))

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        credentials: Optional[Credentials] = None,
        settings: Optional[ProviderSettings] = None,
        **overrides,
    ) -> "SessionConfig":
        """Build a config from ``scheme://[user[:password]@]host[:port][/base]``."""

        parts = urlsplit(url)
        scheme = (parts.scheme or "ftp").lower()
        if scheme not in {item.value for item in FTPScheme}:
            raise ValueError(f"Unsupported scheme '{parts.scheme}'")
        if not parts.hostname:
            raise ValueError(f"URL has no host: {url}")

        if credentials is None:
            if parts.username:
                credentials = Credentials(
                    user=unquote(parts.username),
                    password=SecretStr(unquote(parts.password or "")),
                )
            else:
                credentials = Credentials()

        settings = settings or get_settings()
        values = {
            "host": parts.hostname,
            "port": parts.port,
            "scheme": FTPScheme(scheme),
            "base_path": unquote(parts.path or "/"),
            "credentials": credentials,
            "request_timeout": settings.request_timeout,
            "resource_timeout": settings.resource_timeout,
            "chunk_size": settings.chunk_size,
            "transport_backend": settings.transport_backend,
            "max_connections": settings.max_connections,
        }
        values.update(overrides)
        return cls(**values)

    @property
    def effective_port(self) -> int:
        if self.port is not None:
            return self.port
        return DEFAULT_FTPS_PORT if self.scheme is FTPScheme.FTPS else DEFAULT_FTP_PORT

    @property
    def implicit_tls(self) -> bool:
        return self.scheme is FTPScheme.FTPS or self.effective_port == DEFAULT_FTPS_PORT

    @property
    def explicit_tls(self) -> bool:
        return self.scheme is FTPScheme.FTPES

    def server_path(self, path: str) -> str:
        """Resolve a provider path against the base path into an absolute server path."""

        relative = (path or "").strip().lstrip("/")
        joined = posixpath.join(self.base_path, relative) if relative else self.base_path
        joined = joined.rstrip("/")
        if not joined.startswith("/"):
            joined = "/" + joined
        return joined or "/"

    def provider_path(self, server_path: str) -> str:
        """Strip the base path from an absolute server path."""

        path = server_path.strip()
        base = self.base_path.rstrip("/")
        if base and (path == base or path.startswith(base + "/")):
            path = path[len(base):]
        path = "/" + path.strip("/")
        return path

    def resource_url(self, path: str) -> str:
        """Stable identifier of a remote resource, used as cache key."""

        return f"{self.scheme.value}://{self.host}:{self.effective_port}{quote(self.server_path(path))}"
