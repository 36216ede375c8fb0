"""Configuration for the SEA bridge."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value >= 0 else default


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


SEA_BASE_URL = os.getenv("SEA_BASE_URL", "https://hncseasystem.com/sea/v2").rstrip("/")
SEA_LOGIN_URL = os.getenv("SEA_LOGIN_URL", f"{SEA_BASE_URL}/login/")
SEA_EEGDATA_URL = os.getenv("SEA_EEGDATA_URL", f"{SEA_BASE_URL}/eegdata/")
SEA_SEASCORE_URL = os.getenv("SEA_SEASCORE_URL", f"{SEA_BASE_URL}/seascore/")
SEA_HTTP_TIMEOUT_S = _float_env("SEA_HTTP_TIMEOUT_S", 120.0)

# Fixed-interval polling: the service gets POLL_ATTEMPTS * POLL_INTERVAL_S seconds at most.
POLL_INTERVAL_S = _float_env("SEA_POLL_INTERVAL_S", 5.0)
POLL_ATTEMPTS = _int_env("SEA_POLL_ATTEMPTS", 8)

ARCHIVE_EXTENSION = ".gz"

DATA_DIR = Path(os.getenv("DATA_DIR", "data"))
EXPORTS_DIR = DATA_DIR / "exports"
OBSERVATION_EXPORT_FILENAME = "sea-index-observation.json"

# Static identity context, for deployments where the SMART launch happens elsewhere.
FHIR_SERVER_URL = os.getenv("FHIR_SERVER_URL", "").rstrip("/")
FHIR_ACCESS_TOKEN = os.getenv("FHIR_ACCESS_TOKEN", "")
FHIR_PATIENT_ID = os.getenv("FHIR_PATIENT_ID", "")
FHIR_USER_REF = os.getenv("FHIR_USER_REF", "")

TWCORE_OBS_PROFILE = os.getenv(
    "TWCORE_OBS_PROFILE",
    "https://twcore.mohw.gov.tw/ig/twcore/StructureDefinition/Observation-simple-twcore",
)
SEA_LOINC_PRIMARY_CODE = os.getenv("SEA_LOINC_PRIMARY_CODE", "86585-7")
SEA_LOINC_SECONDARY_CODE = os.getenv("SEA_LOINC_SECONDARY_CODE", "96763-8")
SEA_LOINC_PRIMARY_DISPLAY = os.getenv(
    "SEA_LOINC_PRIMARY_DISPLAY",
    "MDS v3.0 - RAI v1.17.2, OASIS E - Signs and symptoms of delirium (from CAM) "
    "during assessment period [CMS Assessment]",
)
SEA_LOINC_SECONDARY_DISPLAY = os.getenv(
    "SEA_LOINC_SECONDARY_DISPLAY",
    "SARS-CoV-2 (COVID-19) E gene [Presence] in Respiratory system specimen by NAA "
    "with probe detection",
)
SEA_CODE_TEXT = os.getenv("SEA_CODE_TEXT", "SEA Index")


def ensure_data_dirs() -> None:
    for d in (DATA_DIR, EXPORTS_DIR):
        d.mkdir(parents=True, exist_ok=True)
