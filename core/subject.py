"""Helpers for constructing and parsing NATS subjects with protocol version.

Hop commands:   tr.{ver}.cmd.hop.{kind}
Hop broadcast:  tr.{ver}.evt.hop.{kind}
Notifications:  tr.{ver}.evt.session.{session_id}.{suffix}
"""

from dataclasses import dataclass
from typing import Optional

from core.config_defaults import DEFAULT_PROTOCOL_VERSION

SUBJECT_ROOT = "tr"


@dataclass
class SubjectParts:
    protocol_version: str
    category: str
    component: str
    target: str
    suffix: str


def format_subject(
    category: str,
    component: str,
    target: str,
    suffix: str = "",
    protocol_version: str = DEFAULT_PROTOCOL_VERSION,
) -> str:
    parts = [SUBJECT_ROOT, protocol_version, category, component, target]
    if suffix:
        parts.append(suffix)
    return ".".join(parts)


def subject_prefix(protocol_version: str = DEFAULT_PROTOCOL_VERSION) -> str:
    return ".".join([SUBJECT_ROOT, protocol_version])


def cmd_pattern(protocol_version: str = DEFAULT_PROTOCOL_VERSION) -> str:
    return f"{subject_prefix(protocol_version)}.cmd.>"


def evt_pattern(protocol_version: str = DEFAULT_PROTOCOL_VERSION) -> str:
    return f"{subject_prefix(protocol_version)}.evt.>"


def hop_cmd_subject(hop_kind: str, protocol_version: str = DEFAULT_PROTOCOL_VERSION) -> str:
    return format_subject("cmd", "hop", str(getattr(hop_kind, "value", hop_kind)), protocol_version=protocol_version)


def hop_evt_subject(hop_kind: str, protocol_version: str = DEFAULT_PROTOCOL_VERSION) -> str:
    return format_subject("evt", "hop", str(getattr(hop_kind, "value", hop_kind)), protocol_version=protocol_version)


def session_evt_subject(session_id: str, suffix: str, protocol_version: str = DEFAULT_PROTOCOL_VERSION) -> str:
    return format_subject("evt", "session", session_id, suffix, protocol_version=protocol_version)


def parse_subject(subject: str) -> Optional[SubjectParts]:
    parts = subject.split(".")
    if len(parts) < 5 or parts[0] != SUBJECT_ROOT:
        return None

    return SubjectParts(
        protocol_version=parts[1],
        category=parts[2],
        component=parts[3],
        target=parts[4],
        suffix=".".join(parts[5:]),
    )
