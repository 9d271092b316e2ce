from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

BASE_LIST_FIELDS = ("red_flags", "inconsistencies", "next_steps")
DEFAULT_PROFILE_ID = "scam_risk"

SCAM_RISK_ROLE = "You are a digital safety and scam-risk analysis assistant."


@dataclass(frozen=True)
class AnalysisProfile:
    profile_id: str
    assistant_role: str
    list_fields: tuple[str, ...] = BASE_LIST_FIELDS
    image_enabled: bool = True
    model_name: str | None = None
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.profile_id,
            "description": self.description,
            "list_fields": list(self.list_fields),
            "image_enabled": self.image_enabled,
            "model_name": self.model_name,
        }


BUILTIN_PROFILES: dict[str, AnalysisProfile] = {
    "scam_risk": AnalysisProfile(
        profile_id="scam_risk",
        assistant_role=SCAM_RISK_ROLE,
        description="Scam-risk assessment of messages, links and an optional screenshot.",
    ),
    "safety_notes": AnalysisProfile(
        profile_id="safety_notes",
        assistant_role=(
            "You are a digital safety assistant helping a user decide whether a "
            "conversation, link or screenshot can be trusted."
        ),
        list_fields=BASE_LIST_FIELDS + ("safety_notes",),
        description="Scam-risk assessment with additional general safety notes.",
    ),
    "text_only": AnalysisProfile(
        profile_id="text_only",
        assistant_role=SCAM_RISK_ROLE,
        image_enabled=False,
        description="Scam-risk assessment of the text fields only; images are ignored.",
    ),
}


def default_profile_id() -> str:
    profile_id = os.getenv("ANALYZE_DEFAULT_PROFILE", "").strip().lower()
    return profile_id if profile_id in BUILTIN_PROFILES else DEFAULT_PROFILE_ID


def get_profile(profile_id: str | None = None) -> AnalysisProfile | None:
    key = (profile_id or default_profile_id()).strip().lower()
    return BUILTIN_PROFILES.get(key)


def list_profiles() -> dict[str, Any]:
    return {
        "profiles": [profile.to_dict() for profile in BUILTIN_PROFILES.values()],
        "default_profile": default_profile_id(),
    }
