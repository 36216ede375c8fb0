from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from . import config


@runtime_checkable
class IdentityContext(Protocol):
    """What the record writer needs from a completed SMART launch.

    Any handshake implementation can stand behind this; the pipeline only asks
    whether an identity exists and which references to write.
    """

    server_url: str
    access_token: str
    patient_id: str

    def has_identity(self) -> bool: ...

    def identity_ref(self) -> str: ...


@dataclass(frozen=True)
class StaticIdentity:
    server_url: str = ""
    access_token: str = ""
    patient_id: str = ""
    user_id: str = ""
    user_resource_type: str = ""

    @classmethod
    def from_env(cls) -> "StaticIdentity":
        user_type, _, user_id = config.FHIR_USER_REF.rpartition("/")
        return cls(
            server_url=config.FHIR_SERVER_URL,
            access_token=config.FHIR_ACCESS_TOKEN,
            patient_id=config.FHIR_PATIENT_ID,
            user_id=user_id,
            user_resource_type=user_type,
        )

    def has_identity(self) -> bool:
        return bool(self.server_url and self.patient_id)

    def subject_ref(self) -> str:
        return f"Patient/{self.patient_id}"

    def identity_ref(self) -> str:
        # Practitioner launches carry their own reference; otherwise the patient acts for themself.
        if "/" in self.user_id:
            return self.user_id
        if self.user_resource_type and self.user_id:
            return f"{self.user_resource_type}/{self.user_id}"
        return self.subject_ref()


NO_IDENTITY = StaticIdentity()
