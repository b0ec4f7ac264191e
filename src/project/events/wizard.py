# events/wizard.py
"""
State machine behind the multi-step registration form.

States:
    Editing(step)                 visitor is filling in a step
    Submitting(step, started_at)  final submit sent, waiting for the handler
    Submitted(submission_id)      terminal, only the confirmation is shown
    Failed(step, message, errors) submit rejected; values are kept and the
                                  visitor may edit and submit again

Submitted carries no errors and Submitting cannot be edited.
"""
import time
from dataclasses import asdict, dataclass, field
from typing import Optional

from .choices import FieldType
from .conditions import visible_fields
from .errors import InternalError, InvalidTransition, ValidationFailed
from .schema import validate_responses
from .uploads import validate_field_file


@dataclass(frozen=True)
class Editing:
    step: int


@dataclass(frozen=True)
class Submitting:
    step: int
    started_at: float


@dataclass(frozen=True)
class Submitted:
    submission_id: Optional[int] = None


@dataclass(frozen=True)
class Failed:
    step: int
    message: str
    errors: dict = field(default_factory=dict)


_STATE_KINDS = {
    "editing": Editing,
    "submitting": Submitting,
    "submitted": Submitted,
    "failed": Failed,
}


def _state_kind(state) -> str:
    for kind, cls in _STATE_KINDS.items():
        if isinstance(state, cls):
            return kind
    raise TypeError(f"Unknown wizard state {state!r}")


class RegistrationWizard:
    def __init__(self, fields, total_steps=1, values=None, file_data=None, state=None, started=False):
        self.fields = list(fields)
        self.total_steps = max(int(total_steps or 1), 1)
        self.values = self.default_values(self.fields)
        self.values.update(values or {})
        # field id -> {name, size, type, data}
        self.file_data = dict(file_data or {})
        self.state = state or Editing(step=1)
        self.started = started

    @staticmethod
    def default_values(fields) -> dict:
        defaults = {}
        for f in fields:
            if f.field_type == FieldType.CHECKBOX:
                defaults[f.key] = False
            elif f.field_type != FieldType.FILE:
                defaults[f.key] = ""
        return defaults

    # ---- read side ----

    @property
    def current_step(self) -> int:
        return getattr(self.state, "step", self.total_steps)

    @property
    def is_first_step(self) -> bool:
        return self.current_step == 1

    @property
    def is_last_step(self) -> bool:
        return self.current_step >= self.total_steps

    @property
    def is_submitting(self) -> bool:
        return isinstance(self.state, Submitting)

    @property
    def is_submitted(self) -> bool:
        return isinstance(self.state, Submitted)

    @property
    def error(self) -> Optional[str]:
        return self.state.message if isinstance(self.state, Failed) else None

    @property
    def errors(self) -> dict:
        return self.state.errors if isinstance(self.state, Failed) else {}

    @property
    def progress(self) -> int:
        return round(self.current_step / self.total_steps * 100)

    def form_values(self) -> dict:
        merged = dict(self.values)
        merged.update(self.file_data)
        return merged

    def visible_fields(self):
        return visible_fields(self.fields, self.form_values())

    def current_step_fields(self):
        step = self.current_step
        return [f for f in self.visible_fields() if f.step == step]

    # ---- transitions ----

    def _ensure_editable(self):
        if isinstance(self.state, Submitted):
            raise InvalidTransition("This registration has already been submitted.")
        if isinstance(self.state, Submitting):
            raise InvalidTransition("A submission is already in progress.")

    def mark_started(self) -> bool:
        """True the first time only, so the start signal fires once per wizard."""
        if self.started:
            return False
        self.started = True
        return True

    def update(self, values: dict):
        self._ensure_editable()
        known = {f.key for f in self.fields}
        self.values.update({k: v for k, v in values.items() if k in known})

    def attach_file(self, definition, payload: dict):
        self._ensure_editable()
        validate_field_file(definition, payload)
        self.file_data[definition.key] = payload

    def _go_to(self, step: int):
        self.state = Editing(step=min(max(step, 1), self.total_steps))

    def next_step(self):
        self._ensure_editable()
        self._go_to(self.current_step + 1)

    def previous_step(self):
        self._ensure_editable()
        self._go_to(self.current_step - 1)

    def _error_step(self, errors, default: int) -> int:
        """Earliest step holding a field with an error, so its message shows next to the control."""
        steps = [f.step for f in self.fields if f.key in errors]
        return min(max(min(steps), 1), self.total_steps) if steps else default

    def begin_submit(self, now=None) -> dict:
        """
        Validate everything and move to Submitting.

        Returns the raw responses to hand to the submission handler. On
        validation failure the wizard moves to Failed on the earliest step with
        an error and ValidationFailed propagates.
        """
        self._ensure_editable()
        if not self.is_last_step:
            raise InvalidTransition("Complete the remaining steps before submitting.")
        step = self.current_step
        try:
            validate_responses(self.fields, self.form_values())
        except ValidationFailed as exc:
            self.state = Failed(step=self._error_step(exc.errors, step), message=exc.message, errors=exc.errors)
            raise
        self.state = Submitting(step=step, started_at=now if now is not None else time.time())
        return self.form_values()

    def complete(self, submission_id=None):
        if not isinstance(self.state, Submitting):
            raise InvalidTransition("Nothing is being submitted.")
        self.state = Submitted(submission_id=submission_id)

    def fail(self, error):
        if not isinstance(self.state, Submitting):
            raise InvalidTransition("Nothing is being submitted.")
        errors = dict(error.errors)
        self.state = Failed(step=self._error_step(errors, self.state.step), message=error.message, errors=errors)

    def recover_if_stale(self, timeout: float, now=None) -> bool:
        """Give the submit button back if the handler never answered."""
        if not isinstance(self.state, Submitting):
            return False
        now = now if now is not None else time.time()
        if now - self.state.started_at < timeout:
            return False
        self.fail(InternalError("The registration service did not respond. Please try again."))
        return True

    # ---- persistence ----

    def to_dict(self) -> dict:
        state = {"kind": _state_kind(self.state), **asdict(self.state)}
        return {
            "values": self.values,
            "file_data": self.file_data,
            "state": state,
            "started": self.started,
        }

    @classmethod
    def from_dict(cls, fields, total_steps, data) -> "RegistrationWizard":
        data = data or {}
        raw_state = dict(data.get("state") or {})
        state_cls = _STATE_KINDS.get(raw_state.pop("kind", "editing"), Editing)
        try:
            state = state_cls(**raw_state)
        except TypeError:
            state = Editing(step=1)
        wizard = cls(
            fields,
            total_steps=total_steps,
            values=data.get("values"),
            file_data=data.get("file_data"),
            state=state,
            started=bool(data.get("started")),
        )
        # the form may have lost steps since this state was saved
        if isinstance(state, (Editing, Failed)) and not 1 <= state.step <= wizard.total_steps:
            wizard._go_to(wizard.total_steps)
        return wizard
