"""Call event normalization.

PBX firmware versions name the same call attributes differently. The
normalizer checks an ordered list of candidate keys per attribute and builds
a canonical, immutable CallRecord. It never raises: missing or malformed
fields fall back to defaults.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

logger = logging.getLogger(__name__)

UNKNOWN_CALL_ID = "unknown"
RECORDING_DOWNLOAD_PATH = "/openapi/v1.0/recording/download"

# Ordered candidate keys per CallRecord attribute; first non-empty wins.
FIELD_CANDIDATES: dict[str, tuple[str, ...]] = {
    "call_id": ("call_id", "callid", "uniqueid", "linkedid"),
    "recording_url": ("recording_url", "recordingurl", "recording_link"),
    "recording_id": ("recording_id", "recordingid"),
    "recording_filename": (
        "recording_filename",
        "recording_file",
        "recordingfile",
        "recording",
    ),
    "duration": ("duration", "call_duration", "billsec"),
    "talk_duration": ("talk_duration", "talkduration", "talk_time", "billsec"),
    "caller_number": ("caller_number", "call_from", "callfrom", "src", "from"),
    "callee_number": ("callee_number", "call_to", "callto", "dst", "to"),
    "start_time": ("start_time", "time_start", "timestart", "calldate"),
    "end_time": ("end_time", "time_end", "timeend"),
    "status": ("status", "disposition", "call_status"),
    "call_type": ("call_type", "calltype", "communication_type", "type"),
    "trunk": ("trunk", "src_trunk_name", "dst_trunk_name", "srctrunk", "dsttrunk"),
}

DEFAULTS: dict[str, str] = {
    "call_id": UNKNOWN_CALL_ID,
    "recording_url": "",
    "recording_id": "",
    "recording_filename": "",
    "duration": "0",
    "talk_duration": "0",
    "caller_number": "",
    "callee_number": "",
    "status": "ANSWERED",
    "call_type": "unknown",
    "trunk": "unknown",
}


@dataclass(frozen=True)
class CallRecord:
    """Canonical representation of one completed call event."""

    call_id: str
    recording_url: str
    recording_id: str
    recording_filename: str
    duration: str
    talk_duration: str
    caller_number: str
    callee_number: str
    start_time: str
    end_time: str
    status: str
    call_type: str
    trunk: str

    @property
    def has_recording(self) -> bool:
        return bool(self.recording_url or self.recording_id or self.recording_filename)

    @property
    def needs_token(self) -> bool:
        """True when the recording must be resolved through the PBX API."""
        return not self.recording_url and bool(
            self.recording_id or self.recording_filename
        )


def _unwrap_envelope(payload: dict[str, Any]) -> dict[str, Any]:
    """Return the inner event of a ``{"type", "sn", "msg"}`` envelope.

    Newer firmware posts the CDR as a JSON string under ``msg``. When it
    cannot be decoded the outer fields are used, minus the envelope's numeric
    event ``type``.
    """
    if "msg" not in payload:
        return payload
    inner = payload["msg"]
    if isinstance(inner, dict):
        return inner
    if isinstance(inner, str) and inner.lstrip().startswith("{"):
        try:
            decoded = json.loads(inner)
        except ValueError:
            logger.warning("Ignoring undecodable 'msg' envelope in call event")
            decoded = None
        if isinstance(decoded, dict):
            return decoded
    return {key: value for key, value in payload.items() if key != "type"}


def _pick(payload: dict[str, Any], candidates: tuple[str, ...]) -> str | None:
    for key in candidates:
        value = payload.get(key)
        if value is None or isinstance(value, (dict, list)):
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def normalize_call_event(payload: Any) -> CallRecord:
    """Map an arbitrary inbound call event to a CallRecord.

    Args:
        payload: Decoded webhook body. Anything other than a dict yields an
            all-default record.

    Returns:
        CallRecord with defaults applied to every missing attribute.
    """
    if not isinstance(payload, dict):
        payload = {}
    payload = _unwrap_envelope(payload)

    now = datetime.now(UTC).isoformat()
    values: dict[str, str] = {}
    for attribute, candidates in FIELD_CANDIDATES.items():
        picked = _pick(payload, candidates)
        if picked is None:
            picked = DEFAULTS.get(attribute, now)
        values[attribute] = picked

    return CallRecord(**values)


def build_download_url(record: CallRecord, base_url: str, token: str) -> str | None:
    """Return a fetchable URL for the record's recording, if one can be built.

    The direct URL wins. Otherwise a filename plus the currently held token
    yields a single-step download URL. The result embeds the token, so it is
    rebuilt on every call rather than stored on the record.

    Args:
        record: Normalized call record.
        base_url: PBX API base URL.
        token: Currently held access token (may be empty).

    Returns:
        The URL, or None when neither a direct URL nor filename+token exist.
    """
    if record.recording_url:
        return record.recording_url
    if record.recording_filename and token:
        return (
            f"{base_url.rstrip('/')}{RECORDING_DOWNLOAD_PATH}"
            f"?file={quote(record.recording_filename, safe='')}"
            f"&access_token={quote(token, safe='')}"
        )
    return None
