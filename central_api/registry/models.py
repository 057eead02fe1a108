"""Client record model."""

from dataclasses import asdict, dataclass, field
from urllib.parse import urlsplit

ALLOWED_SCHEMES = ("http", "https")


class InvalidClientError(ValueError):
    """Raised when a registration payload or record is rejected."""


@dataclass(frozen=True)
class ClientRecord:
    id: str
    api_url: str = ""
    username: str = ""
    password: str = field(default="", repr=False)  # never logged

    @classmethod
    def from_payload(cls, payload) -> "ClientRecord":
        """Build a record from a decoded JSON body.

        Unknown keys are ignored and absent keys default to "". Known keys
        holding anything other than a string are rejected.
        """
        if not isinstance(payload, dict):
            raise InvalidClientError("request body must be a JSON object")

        values = {}
        for name in ("id", "api_url", "username", "password"):
            value = payload.get(name, "")
            if value is None:
                value = ""
            if not isinstance(value, str):
                raise InvalidClientError(f"{name} must be a string")
            values[name] = value
        return cls(**values)

    def validate(self) -> None:
        """Check id and api_url; raises InvalidClientError."""
        if not self.id:
            raise InvalidClientError("client ID is required")
        if not self.api_url:
            raise InvalidClientError("api_url is required")
        try:
            scheme = urlsplit(self.api_url).scheme
        except ValueError:
            scheme = ""
        if scheme not in ALLOWED_SCHEMES:
            raise InvalidClientError("invalid api_url: must be a valid http or https URL")

    def to_dict(self) -> dict:
        return asdict(self)
