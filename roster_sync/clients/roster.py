from collections.abc import Iterator
from datetime import date, datetime
import logging
import time
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from roster_sync.schemas.roster import RosterEvent, RosterRecord
from roster_sync.utils.timestamps import parse_timestamp

logger = logging.getLogger(__name__)

EVENT_ACTIONS = frozenset({"created", "updated", "deleted"})
USER_ROLE_ENTITY_TYPES = {
    "student": "student",
    "teacher": "teacher",
    "school_admin": "admin",
}
USER_ENTITY_ROLES = {entity_type: role for role, entity_type in USER_ROLE_ENTITY_TYPES.items()}


class RosterError(Exception):
    pass


class RosterUpstreamError(RosterError):
    pass


class RosterUnauthorizedError(RosterError):
    pass


class RosterSource(Protocol):
    def fetch_entities(
        self,
        tenant_external_id: str,
        entity_type: str,
        since: datetime | None = None,
    ) -> list[RosterRecord]:
        ...

    def fetch_events(self, tenant_external_id: str, since_event_id: str | None = None) -> list[RosterEvent]:
        ...

    def fetch_latest_event_id(self, tenant_external_id: str) -> str | None:
        ...


def _clean(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


def _role_data(payload: dict, role: str) -> dict:
    roles = payload.get("roles")
    if isinstance(roles, dict) and isinstance(roles.get(role), dict):
        return roles[role]
    return payload


def _name_parts(payload: dict) -> dict:
    name = payload.get("name")
    if not isinstance(name, dict):
        name = {}
    return {
        "first_name": name.get("first"),
        "middle_name": name.get("middle"),
        "last_name": name.get("last"),
    }


def map_student(payload: dict) -> dict:
    role = _role_data(payload, "student")
    name = _name_parts(payload)
    return {
        **name,
        "email": payload.get("email"),
        "grade": _clean(role.get("grade")),
        "student_number": _clean(role.get("student_number")),
        "state_id": _clean(role.get("state_id") or role.get("sis_id")),
    }


def map_teacher(payload: dict) -> dict:
    role = _role_data(payload, "teacher")
    name = _name_parts(payload)
    return {
        "first_name": name["first_name"],
        "last_name": name["last_name"],
        "email": payload.get("email"),
        "title": role.get("title"),
        "teacher_number": _clean(role.get("teacher_number")),
    }


def map_admin(payload: dict) -> dict:
    role = _role_data(payload, "school_admin")
    name = _name_parts(payload)
    return {
        "first_name": name["first_name"],
        "last_name": name["last_name"],
        "email": payload.get("email"),
        "title": role.get("title"),
    }


def map_section(payload: dict) -> dict:
    return {
        "name": payload.get("name"),
        "period": _clean(payload.get("period")),
        "subject": payload.get("subject"),
        "grade": _clean(payload.get("grade")),
        "course_id": payload.get("course"),
        "term_id": payload.get("term_id"),
    }


def _parse_date(value: Any) -> date | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        logger.warning("roster_date_invalid value=%s", value)
        return None


def map_term(payload: dict) -> dict:
    return {
        "name": payload.get("name"),
        "start_date": _parse_date(payload.get("start_date")),
        "end_date": _parse_date(payload.get("end_date")),
    }


def section_links(payload: dict) -> dict[str, list[str]] | None:
    links = {
        name: [str(member) for member in payload[name] if member]
        for name in ("students", "teachers")
        if isinstance(payload.get(name), list)
    }
    return links or None


PAYLOAD_MAPPERS = {
    "student": map_student,
    "teacher": map_teacher,
    "admin": map_admin,
    "section": map_section,
    "term": map_term,
}
LINK_EXTRACTORS = {
    "section": section_links,
}


def extract_links(entity_type: str, payload: dict) -> dict[str, list[str]] | None:
    extractor = LINK_EXTRACTORS.get(entity_type)
    return extractor(payload) if extractor is not None else None


def build_record(entity_type: str, payload: dict) -> RosterRecord:
    mapper = PAYLOAD_MAPPERS[entity_type]
    return RosterRecord(
        source_id=str(payload.get("id", "")),
        entity_type=entity_type,
        fields=mapper(payload),
        last_modified=parse_timestamp(payload.get("last_modified")),
        links=extract_links(entity_type, payload),
    )


def resolve_event_entity_type(object_type: str, data: dict) -> str:
    if object_type != "user":
        return object_type
    roles = data.get("roles")
    if isinstance(roles, dict):
        for role, entity_type in USER_ROLE_ENTITY_TYPES.items():
            if role in roles:
                return entity_type
    return object_type


class RosterClient:
    def __init__(
        self,
        api_token: str,
        base_url: str,
        page_size: int = 1000,
        timeout_seconds: float = 30.0,
        max_429_retries: int = 3,
        retry_delay_seconds: float = 1.0,
    ) -> None:
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.page_size = page_size
        self.timeout_seconds = timeout_seconds
        self.max_429_retries = max_429_retries
        self.retry_delay_seconds = retry_delay_seconds
        logger.info(
            "roster_client_init base_url=%s page_size=%s timeout_seconds=%s max_429_retries=%s token_configured=%s",
            self.base_url,
            self.page_size,
            self.timeout_seconds,
            self.max_429_retries,
            bool(self.api_token),
        )

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        if path.startswith("/"):
            # Paging links are absolute paths that already carry the API version prefix.
            return str(httpx.URL(self.base_url).join(path))
        return f"{self.base_url}/{path}"

    def _request(self, method: str, path: str, params: dict | None = None) -> dict:
        status_code: int | None = None
        outcome = "unknown"
        attempt = 0
        try:
            if not self.api_token:
                outcome = "missing_token"
                raise RosterUnauthorizedError("Roster API token is not configured")

            url = self._url(path)
            headers = {
                "Authorization": f"Bearer {self.api_token}",
                "Accept": "application/json",
            }

            while True:
                attempt += 1
                response = httpx.request(
                    method,
                    url,
                    params=params,
                    headers=headers,
                    timeout=self.timeout_seconds,
                )
                status_code = response.status_code
                if status_code == 429:
                    retries_remaining = self.max_429_retries - (attempt - 1)
                    if retries_remaining <= 0:
                        outcome = "rate_limited_exhausted"
                        raise RosterUpstreamError("Roster API rate limit exceeded after retries")
                    retry_after_header = response.headers.get("Retry-After")
                    try:
                        retry_after = (
                            float(retry_after_header)
                            if retry_after_header is not None
                            else self.retry_delay_seconds
                        )
                    except ValueError:
                        retry_after = self.retry_delay_seconds
                    retry_after = max(retry_after, 0.0)
                    logger.warning(
                        "roster_request_rate_limited path=%s attempt=%s retry_after=%s retries_remaining=%s",
                        path,
                        attempt,
                        retry_after,
                        retries_remaining,
                    )
                    time.sleep(retry_after)
                    continue

                if status_code in (401, 403):
                    outcome = "unauthorized"
                    raise RosterUnauthorizedError(f"Roster API rejected credentials (status {status_code})")

                response.raise_for_status()
                payload = response.json()
                if not isinstance(payload, dict):
                    outcome = "malformed_payload"
                    raise RosterUpstreamError("Roster API returned a non-object payload")

                outcome = "ok"
                return payload
        except (httpx.HTTPError, ValueError) as exc:
            if outcome == "unknown":
                outcome = "request_failed"
            raise RosterUpstreamError("Roster request failed") from exc
        finally:
            logger.info(
                "roster_request method=%s path=%s status_code=%s outcome=%s attempts=%s",
                method,
                path,
                status_code,
                outcome,
                attempt,
            )

    def _iter_pages(self, path: str, params: dict) -> Iterator[dict]:
        next_path: str | None = path
        next_params: dict | None = {"limit": self.page_size, **params}
        page_count = 0
        item_count = 0
        completed = False
        try:
            while next_path:
                payload = self._request("GET", next_path, params=next_params)
                page_count += 1
                items = payload.get("data", [])
                item_count += len(items)
                for item in items:
                    # Listing endpoints wrap each object as {"data": {...}, "uri": ...}.
                    data = item.get("data") if isinstance(item, dict) else None
                    if isinstance(data, dict):
                        yield data

                next_path = None
                next_params = None
                for link in payload.get("links", []) or []:
                    if link.get("rel") == "next" and link.get("uri"):
                        next_path = link["uri"]
                        break
            completed = True
        finally:
            logger.info(
                "roster_iter_pages path=%s pages=%s items=%s completed=%s",
                path,
                page_count,
                item_count,
                completed,
            )

    def _entity_path(self, tenant_external_id: str, entity_type: str) -> tuple[str, dict]:
        if entity_type in USER_ENTITY_ROLES:
            return f"schools/{tenant_external_id}/users", {"role": USER_ENTITY_ROLES[entity_type]}
        if entity_type == "section":
            return f"schools/{tenant_external_id}/sections", {}
        if entity_type == "term":
            return "terms", {}
        raise RosterError(f"Unsupported entity type: {entity_type}")

    def fetch_entities(
        self,
        tenant_external_id: str,
        entity_type: str,
        since: datetime | None = None,
    ) -> list[RosterRecord]:
        path, params = self._entity_path(tenant_external_id, entity_type)
        records: list[RosterRecord] = []
        dropped = 0
        for payload in self._iter_pages(path, params):
            try:
                record = build_record(entity_type, payload)
            except ValidationError:
                dropped += 1
                logger.warning("roster_record_invalid entity_type=%s payload_id=%s", entity_type, payload.get("id"))
                continue
            # The listing API has no server-side modified filter, so the window is applied here.
            if since is not None and record.last_modified is not None and record.last_modified <= since:
                continue
            records.append(record)
        logger.info(
            "roster_fetch_entities tenant=%s entity_type=%s since=%s fetched=%s dropped=%s",
            tenant_external_id,
            entity_type,
            since,
            len(records),
            dropped,
        )
        return records

    def _build_event(self, raw: dict) -> RosterEvent | None:
        event_type = str(raw.get("type", ""))
        _, _, action = event_type.rpartition(".")
        if action not in EVENT_ACTIONS:
            logger.warning("roster_event_unknown_action event_id=%s type=%s", raw.get("id"), event_type)
            return None
        envelope = raw.get("data") if isinstance(raw.get("data"), dict) else {}
        data = envelope.get("data") if isinstance(envelope.get("data"), dict) else {}
        object_type = envelope.get("object") or event_type.partition(".")[0].rstrip("s")
        entity_type = resolve_event_entity_type(object_type, data)
        payload = PAYLOAD_MAPPERS[entity_type](data) if entity_type in PAYLOAD_MAPPERS else dict(data)
        return RosterEvent(
            id=str(raw.get("id", "")),
            entity_type=entity_type,
            action=action,
            source_id=str(data.get("id") or envelope.get("id") or ""),
            payload=payload,
            links=extract_links(entity_type, data),
            created=parse_timestamp(raw.get("created")),
        )

    def fetch_events(self, tenant_external_id: str, since_event_id: str | None = None) -> list[RosterEvent]:
        params: dict = {"school": tenant_external_id}
        if since_event_id:
            params["starting_after"] = since_event_id
        events: list[RosterEvent] = []
        for raw in self._iter_pages("events", params):
            event = self._build_event(raw)
            if event is not None:
                events.append(event)
        logger.info(
            "roster_fetch_events tenant=%s since_event_id=%s fetched=%s",
            tenant_external_id,
            since_event_id,
            len(events),
        )
        return events

    def fetch_latest_event_id(self, tenant_external_id: str) -> str | None:
        payload = self._request(
            "GET",
            "events",
            params={"school": tenant_external_id, "ending_before": "last", "limit": 1},
        )
        items = payload.get("data", [])
        latest: str | None = None
        if items and isinstance(items[0], dict):
            data = items[0].get("data") if isinstance(items[0].get("data"), dict) else items[0]
            latest = str(data.get("id")) if data.get("id") else None
        logger.info("roster_fetch_latest_event_id tenant=%s latest_event_id=%s", tenant_external_id, latest)
        return latest
