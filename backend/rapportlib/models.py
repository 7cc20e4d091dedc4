"""
Ingress models for transmitted months.

The wire format is the camelCase JSON the browser client sends. Payloads are
validated and normalised here, then handed to the ledger as plain dicts
(``Submission`` documents), which is what every pure function downstream
works on.
"""
import math
import re
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from . import dates
from .errors import PayloadValidationError

OPERATION_CODES = ('option1', 'option2', 'option3', 'option4', 'option5', 'option6')
OPERATION_LABELS = {
    'option1': 'Montage',
    'option2': 'Demontage',
    'option3': 'Transport',
    'option4': 'Inbetriebnahme',
    'option5': 'Abnahme',
    'option6': 'Werk',
}
SPECIAL_TYPES = ('regie', 'fehler')
DAY_HOUR_FIELDS = ('schulung', 'sitzungKurs', 'arztKrank')
ABSENCE_STATUSES = ('pending', 'accepted', 'rejected')

MAX_HOURS_PER_VALUE = 24.0

_WORKER_ID_RE = re.compile(r'^[A-Za-z0-9_.-]{1,64}$')


def normalize_kom_nr(value: Optional[str]) -> str:
    """Kommissionsnummer without any whitespace."""
    if not value:
        return ''
    return re.sub(r'\s+', '', value)


def round_to_quarter(value: float) -> float:
    # half-up like the client, not banker's rounding
    return math.floor(value * 4 + 0.5) / 4


def _check_hours(value: float) -> float:
    if value < 0 or value > MAX_HOURS_PER_VALUE:
        raise ValueError(f"Stunden müssen zwischen 0 und {MAX_HOURS_PER_VALUE:g} liegen")
    return round_to_quarter(value)


def check_worker_id(worker_id: str) -> str:
    if not isinstance(worker_id, str) or not _WORKER_ID_RE.match(worker_id) or worker_id in ('.', '..'):
        raise PayloadValidationError(f"Ungültige Mitarbeiter-ID: {worker_id!r}")
    return worker_id


class _WireModel(BaseModel):
    model_config = ConfigDict(extra='forbid', populate_by_name=True, allow_inf_nan=False)


class KomEntry(_WireModel):
    komNr: str = ''
    hours: Dict[str, float] = Field(default_factory=dict)

    @field_validator('komNr')
    @classmethod
    def _normalize_kom(cls, v: str) -> str:
        return normalize_kom_nr(v)

    @field_validator('hours')
    @classmethod
    def _check_operation_hours(cls, v: Dict[str, float]) -> Dict[str, float]:
        unknown = sorted(set(v) - set(OPERATION_CODES))
        if unknown:
            raise ValueError(f"Unbekannte Tätigkeit(en): {', '.join(unknown)}")
        return {code: _check_hours(hours) for code, hours in v.items()}


class SpecialEntry(_WireModel):
    type: Literal['regie', 'fehler'] = 'regie'
    komNr: str = ''
    hours: float = 0.0
    rapportNr: str = ''
    description: str = ''

    @field_validator('komNr')
    @classmethod
    def _normalize_kom(cls, v: str) -> str:
        return normalize_kom_nr(v)

    @field_validator('hours')
    @classmethod
    def _check(cls, v: float) -> float:
        return _check_hours(v)


class DayHours(_WireModel):
    schulung: float = 0.0
    sitzungKurs: float = 0.0
    arztKrank: float = 0.0

    @field_validator('schulung', 'sitzungKurs', 'arztKrank')
    @classmethod
    def _check(cls, v: float) -> float:
        return _check_hours(v)


class DayFlags(_WireModel):
    ferien: bool = False
    ferienManual: Optional[bool] = None
    ferienFromAbsences: Optional[bool] = None
    schmutzzulage: bool = False
    nebenauslagen: bool = False


class DayRecord(_WireModel):
    entries: List[KomEntry] = Field(default_factory=list)
    specialEntries: List[SpecialEntry] = Field(default_factory=list)
    dayHours: DayHours = Field(default_factory=DayHours)
    flags: DayFlags = Field(default_factory=DayFlags)
    mealAllowance: Dict[str, bool] = Field(default_factory=dict)


class PikettEntry(_WireModel):
    date: str
    komNr: str = ''
    hours: float = 0.0
    note: str = ''
    isOvertime3: bool = False

    @model_validator(mode='before')
    @classmethod
    def _legacy_overtime3(cls, data: Any) -> Any:
        # older clients stored the flag as "overtime3"
        if isinstance(data, dict) and 'overtime3' in data:
            data = dict(data)
            legacy = data.pop('overtime3')
            data.setdefault('isOvertime3', bool(legacy))
        return data

    @field_validator('date')
    @classmethod
    def _check_date(cls, v: str) -> str:
        dates.parse_date_key(v)
        return v

    @field_validator('komNr')
    @classmethod
    def _normalize_kom(cls, v: str) -> str:
        return normalize_kom_nr(v)

    @field_validator('hours')
    @classmethod
    def _check(cls, v: float) -> float:
        return _check_hours(v)


class AbsenceRequest(_WireModel):
    id: str = Field(..., min_length=1, max_length=100)
    type: str = ''
    from_: str = Field(..., alias='from')
    to: str
    days: Optional[float] = Field(None, ge=0, le=366)
    comment: str = ''
    status: Literal['pending', 'accepted', 'rejected'] = 'pending'

    @field_validator('type')
    @classmethod
    def _lower(cls, v: str) -> str:
        return (v or '').lower()

    @model_validator(mode='after')
    def _ordered_range(self) -> 'AbsenceRequest':
        rng = dates.normalize_range(self.from_, self.to)
        if rng is None:
            raise ValueError("Abwesenheit braucht gültige Daten 'from' und 'to' (YYYY-MM-DD)")
        self.from_, self.to = dates.date_key(rng[0]), dates.date_key(rng[1])
        return self


class SubmissionPayload(_WireModel):
    year: int = Field(..., ge=2000, le=2100)
    monthIndex: int = Field(..., ge=0, le=11)
    monthLabel: str = Field(..., min_length=1, max_length=64)
    days: Dict[str, DayRecord] = Field(default_factory=dict)
    pikett: List[PikettEntry] = Field(default_factory=list)
    absences: List[AbsenceRequest] = Field(default_factory=list)
    # legacy clients send their own id; the authenticated identity always wins
    userId: Optional[str] = None

    @model_validator(mode='after')
    def _inside_month(self) -> 'SubmissionPayload':
        problems = []
        for key in self.days:
            d = dates.try_parse_date_key(key)
            if d is None:
                problems.append(f"days.{key}: Ungültiges Datum")
            elif not dates.in_month(d, self.year, self.monthIndex):
                problems.append(f"days.{key}: Datum liegt nicht im übermittelten Monat")
        for pos, entry in enumerate(self.pikett):
            if not dates.in_month(dates.parse_date_key(entry.date), self.year, self.monthIndex):
                problems.append(f"pikett.{pos}.date: Datum liegt nicht im übermittelten Monat")
        first, last = dates.month_bounds(self.year, self.monthIndex)
        seen_ids = set()
        for pos, absence in enumerate(self.absences):
            start, end = dates.parse_date_key(absence.from_), dates.parse_date_key(absence.to)
            if not dates.ranges_overlap(start, end, first, last):
                problems.append(f"absences.{pos}: Abwesenheit berührt den Monat nicht")
            if absence.id in seen_ids:
                problems.append(f"absences.{pos}.id: Doppelte ID {absence.id}")
            seen_ids.add(absence.id)
        if problems:
            raise ValueError("; ".join(problems))
        return self

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(by_alias=True, exclude_none=True, exclude={'userId'})
        doc['days'] = dict(sorted(doc['days'].items()))
        return doc


def _format_errors(exc: ValidationError) -> List[str]:
    messages = []
    for err in exc.errors():
        field = ".".join(str(loc) for loc in err.get("loc", []))
        msg = err.get("msg", "Ungültiger Wert")
        messages.append(f"{field}: {msg}" if field else msg)
    return messages


def validate_payload(raw: Any) -> Dict[str, Any]:
    """Validate a raw transmit payload and return the normalised document."""
    if not isinstance(raw, dict):
        raise PayloadValidationError("Ungültige Übermittlung: JSON-Objekt erwartet")
    try:
        payload = SubmissionPayload.model_validate(raw)
    except ValidationError as exc:
        errors = _format_errors(exc)
        raise PayloadValidationError("Ungültige Übermittlung: " + "; ".join(errors), errors) from exc
    return payload.to_document()


class Identity(BaseModel):
    """Caller as resolved by the auth layer."""
    worker_id: str
    team_id: str
    is_admin: bool = False
    name: str = ''

    @field_validator('worker_id')
    @classmethod
    def _safe_worker_id(cls, v: str) -> str:
        if not _WORKER_ID_RE.match(v) or v in ('.', '..'):
            raise ValueError("Ungültige Mitarbeiter-ID")
        return v
