from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
from loguru import logger

from . import config
from .errors import RecordStoreError
from .identity import IdentityContext

FHIR_JSON = "application/fhir+json"
LOINC_SYSTEM = "http://loinc.org"
INTERNAL_CODE_SYSTEM = "http://clinical-indices.org"
INTERNAL_CODE = "SEA-INDEX"
UCUM_SYSTEM = "http://unitsofmeasure.org"
CATEGORY_SYSTEM = "http://terminology.hl7.org/CodeSystem/observation-category"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class Coding:
    system: str
    code: str
    display: str


def default_codings() -> tuple[Coding, ...]:
    return (
        Coding(LOINC_SYSTEM, config.SEA_LOINC_PRIMARY_CODE, config.SEA_LOINC_PRIMARY_DISPLAY),
        Coding(LOINC_SYSTEM, config.SEA_LOINC_SECONDARY_CODE, config.SEA_LOINC_SECONDARY_DISPLAY),
        Coding(INTERNAL_CODE_SYSTEM, INTERNAL_CODE, config.SEA_CODE_TEXT),
    )


@dataclass(frozen=True)
class ClinicalRecord:
    subject_ref: str
    performer_ref: str
    value: float
    issued: str
    codings: tuple[Coding, ...] = field(default_factory=default_codings)
    code_text: str = config.SEA_CODE_TEXT
    profile: str = config.TWCORE_OBS_PROFILE
    unit: str = "index"

    def to_fhir(self) -> dict[str, Any]:
        return {
            "resourceType": "Observation",
            "meta": {"profile": [self.profile]},
            "status": "final",
            "category": [
                {
                    "coding": [{"system": CATEGORY_SYSTEM, "code": "survey", "display": "Survey"}],
                    "text": "Survey",
                }
            ],
            "text": {
                "status": "generated",
                "div": f'<div xmlns="http://www.w3.org/1999/xhtml">{self.code_text}: {self.value}</div>',
            },
            "code": {
                "coding": [asdict(c) for c in self.codings],
                "text": self.code_text,
            },
            "subject": {"reference": self.subject_ref},
            "performer": [{"reference": self.performer_ref}],
            "effectiveDateTime": self.issued,
            "valueQuantity": {
                "value": self.value,
                "unit": self.unit,
                "system": UCUM_SYSTEM,
                "code": "1",
            },
        }


@dataclass(frozen=True)
class PatientSummary:
    id: str
    name: str
    gender: str
    birth_date: str


def summarize_patient(resource: Any) -> PatientSummary:
    resource = resource if isinstance(resource, dict) else {}
    names = resource.get("name")
    name = names[0] if isinstance(names, list) and names and isinstance(names[0], dict) else {}
    given = name.get("given")
    given_text = " ".join(g for g in given if isinstance(g, str)) if isinstance(given, list) else ""
    display = name.get("text") or f"{given_text} {name.get('family') or ''}".strip()
    return PatientSummary(
        id=str(resource.get("id") or ""),
        name=display or "Name not provided",
        gender=str(resource.get("gender") or "Not provided"),
        birth_date=str(resource.get("birthDate") or "Not provided"),
    )


class RecordWriter:
    def __init__(
        self,
        identity: IdentityContext,
        *,
        timeout_s: float = config.SEA_HTTP_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._identity = identity
        self._timeout_s = timeout_s
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.last_record: ClinicalRecord | None = None

    @property
    def identity(self) -> IdentityContext:
        return self._identity

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout_s),
                transport=self._transport,
            )
        return self._client

    def _auth(self) -> tuple[str, dict[str, str]]:
        server_url = (self._identity.server_url or "").rstrip("/")
        token = self._identity.access_token or ""
        if not server_url or not token:
            raise RecordStoreError(
                "FHIR authorization info is missing",
                user_message="FHIR authorization info is missing",
            )
        return server_url, {
            "Authorization": f"Bearer {token}",
            "Accept": FHIR_JSON,
        }

    def build(self, score: float) -> ClinicalRecord:
        if not self._identity.patient_id:
            raise RecordStoreError("FHIR client is not ready", user_message="FHIR client is not ready")
        return ClinicalRecord(
            subject_ref=f"Patient/{self._identity.patient_id}",
            performer_ref=self._identity.identity_ref(),
            value=score,
            issued=_utcnow_iso(),
        )

    async def write(self, score: float) -> ClinicalRecord:
        record = self.build(score)
        # Kept even if the POST fails so the record can still be exported.
        self.last_record = record
        server_url, headers = self._auth()
        client = self._get_client()
        try:
            resp = await client.post(
                f"{server_url}/Observation",
                content=json.dumps(record.to_fhir()).encode("utf-8"),
                headers={**headers, "Content-Type": FHIR_JSON},
            )
        except httpx.HTTPError as e:
            raise RecordStoreError(f"FHIR write request failed: {e}") from e

        if not resp.is_success:
            try:
                outcome = resp.json()
            except Exception:
                outcome = None
            raise RecordStoreError(
                f"FHIR write failed: HTTP {resp.status_code}",
                status_code=resp.status_code,
                payload=outcome,
            )
        logger.info(f"Wrote SEA Index Observation for {record.subject_ref}")
        return record

    async def read_patient(self) -> PatientSummary:
        server_url, headers = self._auth()
        client = self._get_client()
        try:
            resp = await client.get(f"{server_url}/Patient/{self._identity.patient_id}", headers=headers)
        except httpx.HTTPError as e:
            raise RecordStoreError(f"FHIR patient read failed: {e}") from e
        if not resp.is_success:
            raise RecordStoreError(
                f"FHIR patient read failed: HTTP {resp.status_code}",
                status_code=resp.status_code,
                user_message=(
                    "Authorization expired or insufficient permissions, please log in again"
                    if resp.status_code in {401, 403}
                    else None
                ),
            )
        try:
            return summarize_patient(resp.json())
        except ValueError as e:
            raise RecordStoreError(f"FHIR patient read returned invalid JSON: {e}") from e

    def export(self, path: Path | None = None) -> Path:
        if self.last_record is None:
            raise RecordStoreError("No Observation has been built yet", user_message="Nothing to export")
        out = path or (config.EXPORTS_DIR / config.OBSERVATION_EXPORT_FILENAME)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(json.dumps(self.last_record.to_fhir(), indent=2, ensure_ascii=False), encoding="utf-8")
        return out
