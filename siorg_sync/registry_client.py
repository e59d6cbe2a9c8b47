"""SIORG registry API client."""
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any, List
import requests

from siorg_sync import settings
from siorg_sync.errors import RegistryUnavailable, RegistryRejected
from siorg_sync.logging_conf import logger
from siorg_sync.queue.models import EntityType


# SIORG field names mapped to local field names
FIELD_MAP = {
    "nome": "name",
    "sigla": "acronym",
    "ativo": "is_active",
    "cnpj": "cnpj",
    "codigo_ug": "ug_code",
    "codigo_unidade_pai": "parent_code",
    "tipo_unidade": "unit_type",
    "area_atuacao": "activity_area",
    "nivel_hierarquico": "hierarchy_level",
    "descricao": "description",
}

# Identifiers are not reconcilable fields
_IDENTIFIER_KEYS = {"codigo_siorg", "codigo", "external_code"}

ENDPOINTS = {
    EntityType.ORGANIZATION: "/api/v1/organizacoes/{code}",
    EntityType.UNIT: "/api/v1/unidades/{code}",
}

ENTITY_TYPES = {
    "ORGAO": EntityType.ORGANIZATION,
    "ORGANIZACAO": EntityType.ORGANIZATION,
    "UNIDADE": EntityType.UNIT,
    "CATEGORIA": EntityType.CATEGORY,
    "TIPO": EntityType.TYPE,
}

CHANGE_TYPES = {
    "CRIACAO": "CREATION",
    "ALTERACAO": "UPDATE",
    "EXTINCAO": "EXTINCTION",
    "MUDANCA_HIERARQUIA": "HIERARCHY_CHANGE",
    "FUSAO": "MERGE",
    "DESMEMBRAMENTO": "SPLIT",
}


def normalize_record(record: Dict[str, Any]) -> Dict[str, Any]:
    """Translate a SIORG record to local field names.

    Keys already in local form pass through unchanged, so queue payloads may
    use either vocabulary.
    """
    normalized = {}
    for key, value in record.items():
        if key in _IDENTIFIER_KEYS:
            continue
        normalized[FIELD_MAP.get(key, key)] = value
    return normalized


@dataclass
class RemoteRecord:
    """A record as currently published by the registry."""

    entity_type: EntityType
    external_code: str
    fields: Dict[str, Any]


@dataclass
class ChangeEvent:
    """One entry of the registry change feed."""

    entity_type: EntityType
    operation: str
    external_code: str
    payload: Dict[str, Any]
    changed_at: Optional[str] = None


class RegistryClient:
    """Fetches organizations and units from the SIORG API."""

    def __init__(self, base_url: Optional[str] = None, token: Optional[str] = None,
                 timeout: Optional[int] = None, max_retries: Optional[int] = None,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or settings.REGISTRY_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.REGISTRY_TIMEOUT
        self.max_retries = settings.REGISTRY_MAX_RETRIES if max_retries is None else max_retries
        self.token = token or settings.REGISTRY_TOKEN
        self._session = self._configure(session) if session is not None else None
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        """Session for the calling thread.

        Items are fetched from a thread pool and a requests Session is not
        thread-safe, so each thread gets its own unless one was injected.
        """
        if self._session is not None:
            return self._session
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._configure(requests.Session())
            self._local.session = session
        return session

    def _configure(self, session: requests.Session) -> requests.Session:
        session.headers.update({"Accept": "application/json"})
        if self.token:
            session.headers.update({"Authorization": f"Bearer {self.token}"})
        return session

    def fetch(self, external_code: str, entity_type=EntityType.UNIT) -> Optional[RemoteRecord]:
        """
        Fetch the current registry record for an entity.

        Args:
            external_code: SIORG code of the entity
            entity_type: ORGANIZATION or UNIT

        Returns:
            The normalized record, or None if the registry does not know the code

        Raises:
            RegistryUnavailable: network errors, timeouts, 429 or 5xx after retries
            RegistryRejected: other 4xx responses or an unparseable body
        """
        entity_type = EntityType(entity_type)
        endpoint = ENDPOINTS.get(entity_type)
        if endpoint is None:
            raise RegistryRejected(f"SIORG does not publish {entity_type.value} records")

        data = self._request("GET", endpoint.format(code=external_code))
        if data is None:
            return None
        if not isinstance(data, dict):
            raise RegistryRejected(f"Unexpected SIORG response for {external_code}: {type(data).__name__}")
        return RemoteRecord(entity_type=entity_type, external_code=str(external_code),
                            fields=normalize_record(data))

    def get_changes_since(self, since: datetime) -> List[ChangeEvent]:
        """Fetch change feed entries published after `since`."""
        data = self._request("GET", "/api/v1/mudancas", params={"desde": since.isoformat()})
        if data is None:
            return []
        if not isinstance(data, list):
            raise RegistryRejected("Unexpected SIORG change feed response")

        events = []
        for raw in data:
            entity_type = ENTITY_TYPES.get(str(raw.get("tipo_entidade", "")).upper())
            operation = CHANGE_TYPES.get(str(raw.get("tipo_mudanca", "")).upper())
            code = raw.get("codigo_siorg")
            if entity_type is None or operation is None or code is None:
                logger.warning(f"Skipping unrecognized change feed entry: {raw}")
                continue
            events.append(ChangeEvent(
                entity_type=entity_type,
                operation=operation,
                external_code=str(code),
                payload=normalize_record(raw.get("dados") or {}),
                changed_at=raw.get("data_mudanca"),
            ))
        return events

    def health_check(self) -> bool:
        try:
            response = self.session.get(f"{self.base_url}/health", timeout=5)
            return response.ok
        except requests.exceptions.RequestException as e:
            logger.warning(f"SIORG health check failed: {e}")
            return False

    def _request(self, method: str, endpoint: str, params: Optional[Dict[str, Any]] = None,
                 retry_count: int = 0):
        """Make API request with retry logic. Returns None on 404."""
        url = f"{self.base_url}{endpoint}"

        try:
            response = self.session.request(method=method, url=url, params=params, timeout=self.timeout)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            if retry_count < self.max_retries:
                wait_time = 2 ** retry_count
                logger.warning(f"SIORG request failed ({e}). Retrying in {wait_time}s...")
                time.sleep(wait_time)
                return self._request(method, endpoint, params, retry_count + 1)
            raise RegistryUnavailable(f"SIORG unreachable: {e}") from e
        except requests.exceptions.RequestException as e:
            raise RegistryUnavailable(f"SIORG request failed: {e}") from e

        if response.status_code == 404:
            return None

        if response.status_code == 429 or response.status_code >= 500:
            if retry_count < self.max_retries:
                if response.status_code == 429:
                    wait_time = int(response.headers.get("Retry-After", 2 ** retry_count))
                    logger.warning(f"Rate limited. Waiting {wait_time}s...")
                else:
                    wait_time = 2 ** retry_count
                    logger.warning(f"Server error {response.status_code}. Retrying in {wait_time}s...")
                time.sleep(wait_time)
                return self._request(method, endpoint, params, retry_count + 1)
            raise RegistryUnavailable(f"SIORG API error: {response.status_code}",
                                      status_code=response.status_code)

        if response.status_code >= 400:
            raise RegistryRejected(f"SIORG rejected {endpoint}: {response.status_code}",
                                   status_code=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise RegistryRejected(f"Failed to parse SIORG response for {endpoint}: {e}") from e
