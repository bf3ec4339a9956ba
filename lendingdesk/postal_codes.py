"""Brazilian postal code (CEP) lookups against ViaCEP."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import httpx

from . import schemas
from .config import settings
from .errors import PostalCodeLookupError

logger = logging.getLogger(__name__)

FETCH_FAILED = "Failed to fetch postal code information"
NOT_FOUND = "Postal code not found"


@dataclass(frozen=True)
class PostalAddress:
    postal_code: str
    street: str
    district: str
    city: str
    state: str
    complement: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def normalize_postal_code(raw: str) -> str:
    try:
        return schemas.normalize_postal_code(raw)
    except ValueError as exc:
        raise PostalCodeLookupError("Invalid postal code length") from exc


def _parse_payload(postal_code: str, data: Dict[str, Any]) -> PostalAddress:
    if data.get("erro"):
        raise PostalCodeLookupError(NOT_FOUND)
    return PostalAddress(
        postal_code=postal_code,
        street=data.get("logradouro") or "",
        district=data.get("bairro") or "",
        city=data.get("localidade") or "",
        state=data.get("uf") or "",
        complement=data.get("complemento") or None,
    )


async def lookup(raw: str, *, client: Optional[httpx.AsyncClient] = None) -> PostalAddress:
    postal_code = normalize_postal_code(raw)
    url = f"{settings.postal_code_base_url.rstrip('/')}/{postal_code}/json/"
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=settings.postal_code_timeout)
    try:
        response = await http.get(url, headers={"Accept": "application/json"})
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("Postal code lookup for %s failed: %s", postal_code, exc)
        raise PostalCodeLookupError(FETCH_FAILED) from exc
    finally:
        if owns_client:
            await http.aclose()
    if not isinstance(data, dict):
        raise PostalCodeLookupError(FETCH_FAILED)
    return _parse_payload(postal_code, data)
