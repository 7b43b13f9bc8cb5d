from pydantic import BaseModel, Field, field_validator


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    value_str = str(value).strip()
    return value_str or None


class GeoIPQuery(BaseModel):
    """Query parameters shared by the lookup endpoints.

    If `ip` is omitted or blank, the caller's observed address is looked up.
    `format` and `callback` only influence rendering; unknown formats fall back
    to the Accept header and then to the configured default rather than
    failing the request. Address validation happens in the resolver so the
    error is rendered in the negotiated format.
    """

    ip: str | None = Field(
        default=None,
        description="IPv4 or IPv6 address to look up. If omitted, the client's IP is used.",
        examples=["8.8.8.8", "2001:4860:4860::8888"],
    )
    format: str | None = Field(
        default=None,
        description="Output format: json, xml, csv or yaml.",
        examples=["json", "xml"],
    )
    callback: str | None = Field(
        default=None,
        description="JSONP callback function name (JSON output only).",
        examples=["myCallback"],
    )
    provider: str | None = Field(
        default=None,
        description="Provider to use for this request only, e.g. maxmind or dbip.",
        examples=["maxmind", "dbip"],
    )

    @field_validator("ip", "format", "callback", "provider", mode="before")
    @classmethod
    def _normalize_blank(cls, value: str | None) -> str | None:
        """Blank query values are treated as absent."""
        return _blank_to_none(value)


class ProviderQuery(BaseModel):
    """Query parameters for endpoints that only take a provider selection."""

    provider: str | None = Field(
        default=None,
        description="Provider identifier, e.g. maxmind or dbip.",
        examples=["maxmind", "dbip"],
    )

    @field_validator("provider", mode="before")
    @classmethod
    def _normalize_blank(cls, value: str | None) -> str | None:
        return _blank_to_none(value)
