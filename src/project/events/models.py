# events/models.py
import logging
from dataclasses import dataclass
from typing import Optional

from django.core.files.base import ContentFile
from django.db import DatabaseError, IntegrityError, models, transaction
from django.db.models import F, Max, Q, CheckConstraint, UniqueConstraint
from django.utils import timezone

from .choices import FieldType, RegistrationStatus
from .conditions import parse_rule, visible_fields
from .errors import (
    AlreadyRegistered, CapacityExceeded, FormInactive, InternalError, NotFound, RegistrationError,
)
from .schema import option_list, validate_responses
from .uploads import decode_payload, normalize_file_payload, validate_field_file

logger = logging.getLogger(__name__)


# ====== Events ======
class Event(models.Model):
    title = models.CharField(max_length=200)
    slug = models.SlugField(max_length=200, unique=True)
    description = models.TextField(blank=True)
    location = models.CharField(max_length=200, blank=True)
    start_at = models.DateTimeField()
    end_at = models.DateTimeField(null=True, blank=True)
    max_attendees = models.PositiveIntegerField(null=True, blank=True)  # None => unlimited
    registered_count = models.PositiveIntegerField(default=0)  # denormalized, legacy + dynamic
    is_published = models.BooleanField(default=False)
    allow_registration = models.BooleanField(default=True)
    registration_closed = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["start_at"]
        constraints = [
            CheckConstraint(
                condition=Q(end_at__isnull=True) | Q(end_at__gt=F("start_at")),
                name="event_time_valid",
            ),
        ]

    def __str__(self): return self.title

    @property
    def is_open(self) -> bool:
        return self.is_published and self.allow_registration and not self.registration_closed


@dataclass(frozen=True)
class CapacityState:
    max_attendees: Optional[int]
    current_count: int
    registration_closed: bool
    allow_registration: bool

    @property
    def spots_left(self) -> Optional[int]:
        if self.max_attendees is None:
            return None
        return max(self.max_attendees - self.current_count, 0)

    @property
    def is_full(self) -> bool:
        return self.spots_left == 0


# ====== Dynamic registration forms ======
class RegistrationForm(models.Model):
    event = models.OneToOneField(Event, on_delete=models.CASCADE, related_name="registration_form")
    is_active = models.BooleanField(default=False)
    total_steps = models.PositiveSmallIntegerField(default=1)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            CheckConstraint(condition=Q(total_steps__gte=1), name="form_total_steps_min"),
        ]

    def __str__(self): return f"Registration form for {self.event}"

    @property
    def max_step(self) -> int:
        return self.fields.aggregate(m=Max("step"))["m"] or 1


class FormField(models.Model):
    form = models.ForeignKey(RegistrationForm, on_delete=models.CASCADE, related_name="fields")
    label = models.CharField(max_length=200)
    placeholder = models.CharField(max_length=200, blank=True)
    field_type = models.CharField(max_length=16, choices=FieldType.choices, default=FieldType.TEXT)
    options = models.JSONField(null=True, blank=True)  # SELECT / RADIO only
    is_required = models.BooleanField(default=False)
    order = models.IntegerField(default=0)
    step = models.PositiveSmallIntegerField(default=1)
    conditional_logic = models.JSONField(null=True, blank=True)
    max_file_size = models.PositiveIntegerField(null=True, blank=True)  # bytes, FILE only
    accepted_types = models.CharField(max_length=255, blank=True)  # FILE only

    class Meta:
        ordering = ["order", "id"]
        constraints = [
            CheckConstraint(condition=Q(step__gte=1), name="field_step_min"),
        ]

    def __str__(self): return f"{self.label} ({self.field_type})"

    @property
    def key(self) -> str:
        """Response key for this field in submissions and generated forms."""
        return str(self.pk)

    @property
    def rule(self):
        return parse_rule(self.conditional_logic)

    @property
    def option_list(self):
        return option_list(self.options)


class FormSubmission(models.Model):
    event = models.ForeignKey(Event, on_delete=models.CASCADE, related_name="submissions")
    form = models.ForeignKey(RegistrationForm, on_delete=models.SET_NULL, null=True, related_name="submissions")
    responses = models.JSONField(default=dict)  # field id -> value
    email = models.EmailField(null=True, blank=True)  # denormalized for listing
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at", "id"]
        constraints = [
            UniqueConstraint(
                fields=["event", "email"],
                condition=Q(email__isnull=False),
                name="uniq_submission_event_email",
            ),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Form submissions cannot be changed once stored.")
        super().save(*args, **kwargs)


class SubmissionFile(models.Model):
    submission = models.ForeignKey(FormSubmission, on_delete=models.CASCADE, related_name="files")
    field_id = models.CharField(max_length=64)
    file_name = models.CharField(max_length=255)
    file_size = models.PositiveIntegerField()
    mime_type = models.CharField(max_length=100)
    file = models.FileField(upload_to="registrations/%Y/%m/")
    created_at = models.DateTimeField(auto_now_add=True)


# ====== Legacy fixed-field registration ======
class Registration(models.Model):
    event = models.ForeignKey(Event, on_delete=models.CASCADE, related_name="registrations")
    full_name = models.CharField(max_length=200)
    email = models.EmailField()
    phone = models.CharField(max_length=40, blank=True)
    notes = models.TextField(blank=True)
    status = models.CharField(max_length=12, choices=RegistrationStatus.choices, default=RegistrationStatus.PENDING)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            UniqueConstraint(fields=["event", "email"], name="uniq_registration_event_email"),
        ]

    def __str__(self): return f"{self.full_name} <{self.email}>"


# ====== Capacity (transactional helpers) ======

def get_event_capacity(event_id) -> CapacityState:
    event = Event.objects.filter(pk=event_id).first()
    if event is None:
        raise NotFound("Event not found.")
    return CapacityState(
        max_attendees=event.max_attendees,
        current_count=event.registered_count,
        registration_closed=event.registration_closed,
        allow_registration=event.allow_registration,
    )


def reserve_spot(event_id) -> bool:
    """
    Take one spot with a single conditional UPDATE.
    Call inside transaction.atomic so a failed insert gives the spot back.
    """
    updated = (Event.objects
               .filter(pk=event_id)
               .filter(Q(max_attendees__isnull=True) | Q(registered_count__lt=F("max_attendees")))
               .update(registered_count=F("registered_count") + 1))
    return updated == 1


def release_spot(event_id):
    Event.objects.filter(pk=event_id, registered_count__gt=0).update(registered_count=F("registered_count") - 1)


# ====== Field definition store ======

DEFAULT_FIELDS = [
    {"label": "Full Name", "placeholder": "Enter your full name", "field_type": FieldType.TEXT, "is_required": True},
    {"label": "Email Address", "placeholder": "your@email.com", "field_type": FieldType.EMAIL, "is_required": True},
]

FIELD_ATTRS = (
    "label", "placeholder", "field_type", "options", "is_required", "step",
    "conditional_logic", "max_file_size", "accepted_types",
)


@transaction.atomic
def get_or_create_event_form(event: Event) -> RegistrationForm:
    """New forms start inactive with a name and an email field."""
    form, created = RegistrationForm.objects.get_or_create(event=event, defaults={"is_active": False})
    if created:
        FormField.objects.bulk_create([
            FormField(form=form, order=i, **attrs) for i, attrs in enumerate(DEFAULT_FIELDS)
        ])
    return form


def get_public_event_form(event: Event) -> Optional[RegistrationForm]:
    """The active dynamic form of an event, or None when the legacy form applies."""
    form = RegistrationForm.objects.filter(event=event, is_active=True).first()
    if form is None or not form.fields.exists():
        return None
    return form


def get_fields(form_id):
    return list(FormField.objects.filter(form_id=form_id).order_by("order", "id"))


def _field_attrs(data: dict) -> dict:
    attrs = {k: v for k, v in data.items() if k in FIELD_ATTRS}
    if "options" in attrs:
        attrs["options"] = option_list(attrs["options"]) or None
    if attrs.get("field_type", FieldType.FILE) != FieldType.FILE:
        attrs["max_file_size"] = None
        attrs["accepted_types"] = ""
    return attrs


@transaction.atomic
def add_field(form_id, data: dict) -> FormField:
    RegistrationForm.objects.select_for_update().get(pk=form_id)
    top = FormField.objects.filter(form_id=form_id).aggregate(m=Max("order"))["m"]
    return FormField.objects.create(form_id=form_id, order=(top if top is not None else -1) + 1, **_field_attrs(data))


def update_field(field_id, data: dict) -> FormField:
    field = FormField.objects.get(pk=field_id)
    for name, value in _field_attrs(data).items():
        setattr(field, name, value)
    field.save()
    return field


def delete_field(field_id):
    """Stored submissions keep their answers under the deleted field's id."""
    deleted, _ = FormField.objects.filter(pk=field_id).delete()
    if not deleted:
        raise NotFound("Field not found.")


@transaction.atomic
def reorder_field(field_id, direction: str):
    field = FormField.objects.filter(pk=field_id).first()
    if field is None:
        raise NotFound("Field not found.")
    fields = list(FormField.objects.select_for_update().filter(form_id=field.form_id).order_by("order", "id"))
    index = next(i for i, f in enumerate(fields) if f.pk == field.pk)
    swap_index = index - 1 if direction == "up" else index + 1
    if swap_index < 0 or swap_index >= len(fields):
        return  # already at the boundary
    # renumber so duplicate order values cannot make the swap a no-op
    fields[index], fields[swap_index] = fields[swap_index], fields[index]
    for position, f in enumerate(fields):
        if f.order != position:
            f.order = position
            f.save(update_fields=["order"])


def toggle_form_active(form_id, is_active: bool) -> RegistrationForm:
    form = RegistrationForm.objects.get(pk=form_id)
    form.is_active = is_active
    form.save(update_fields=["is_active", "updated_at"])
    return form


def update_form_settings(form_id, is_active: bool, total_steps: int) -> RegistrationForm:
    form = RegistrationForm.objects.get(pk=form_id)
    form.is_active = is_active
    form.total_steps = total_steps
    form.save(update_fields=["is_active", "total_steps", "updated_at"])
    return form


# ====== Submission store ======

def count_submissions(event_id) -> int:
    return FormSubmission.objects.filter(event_id=event_id).count()


def list_submissions(event_id):
    return list(FormSubmission.objects.filter(event_id=event_id).order_by("created_at", "id"))


def _load_open_form(event_id, form_id):
    try:
        event = Event.objects.filter(pk=int(event_id)).first()
        form = RegistrationForm.objects.filter(pk=int(form_id), event_id=event.pk).first() if event else None
    except (TypeError, ValueError):
        raise NotFound()
    if event is None:
        raise NotFound("Event not found.")
    if form is None:
        raise NotFound("Registration form not found.")
    if not form.is_active:
        raise FormInactive("Registration form is not active.")
    if not event.is_open:
        raise FormInactive("Registration is closed for this event.")
    return event, form


def submit_dynamic_form(event_id, form_id, responses) -> FormSubmission:
    """
    Server-side entry point for a dynamic registration.

    Field definitions are reloaded and everything the browser checked is
    checked again. The capacity reservation and the insert share one
    transaction. Raises a RegistrationError subclass on every failure;
    anything unexpected is logged and reported as InternalError.
    """
    try:
        return _store_dynamic_submission(event_id, form_id, responses)
    except RegistrationError:
        raise
    except Exception as exc:
        logger.exception("Unexpected error submitting form %s for event %s", form_id, event_id)
        raise InternalError("Failed to submit registration.") from exc


def _store_dynamic_submission(event_id, form_id, responses) -> FormSubmission:
    event, form = _load_open_form(event_id, form_id)
    fields = get_fields(form.pk)
    responses = dict(responses or {})

    files = {}
    for field in visible_fields(fields, responses):
        if field.field_type == FieldType.FILE and responses.get(field.key):
            payload = normalize_file_payload(responses[field.key])
            validate_field_file(field, payload)
            files[field.key] = responses[field.key] = payload

    cleaned = validate_responses(fields, responses)

    email = next(
        (cleaned[f.key] for f in fields if f.field_type == FieldType.EMAIL and cleaned.get(f.key)),
        None,
    )
    email = email.lower() if email else None
    if email and FormSubmission.objects.filter(event=event, email=email).exists():
        raise AlreadyRegistered()

    try:
        with transaction.atomic():
            if not reserve_spot(event.pk):
                raise CapacityExceeded()
            submission = FormSubmission.objects.create(event=event, form=form, responses=cleaned, email=email)
            for key, payload in files.items():
                if key not in cleaned:
                    continue
                SubmissionFile.objects.create(
                    submission=submission,
                    field_id=key,
                    file_name=payload["name"],
                    file_size=payload["size"],
                    mime_type=payload["type"],
                    file=ContentFile(decode_payload(payload), name=payload["name"]),
                )
    except IntegrityError:
        raise AlreadyRegistered()
    except (DatabaseError, OSError) as exc:
        logger.exception("Submit dynamic form failed for event %s", event.pk)
        raise InternalError("Failed to submit registration.") from exc

    logger.info("Dynamic registration %s stored for event %s", submission.pk, event.slug)
    return submission


# ====== Legacy registration ======

def register_for_event(event: Event, full_name: str, email: str, phone: str = "", notes: str = "") -> Registration:
    event = Event.objects.filter(pk=event.pk).first()
    if event is None or not event.is_published:
        raise NotFound("Event is not available.")
    if not event.allow_registration or event.registration_closed:
        raise FormInactive()
    if event.start_at < timezone.now():
        raise FormInactive("This event has already started.")
    email = email.lower()
    if Registration.objects.filter(event=event, email=email).exists():
        raise AlreadyRegistered("You have already registered for this event with this email address.")
    try:
        with transaction.atomic():
            if not reserve_spot(event.pk):
                raise CapacityExceeded("This event is at full capacity.")
            reg = Registration.objects.create(
                event=event, full_name=full_name, email=email, phone=phone or "", notes=notes or "",
            )
    except IntegrityError:
        raise AlreadyRegistered("You have already registered for this event with this email address.")
    except DatabaseError as exc:
        logger.exception("Legacy registration failed for event %s", event.pk)
        raise InternalError("Failed to register for event.") from exc
    return reg


@transaction.atomic
def update_registration_status(reg: Registration, status: str) -> Registration:
    """Cancelling frees the spot; reinstating takes one again."""
    reg = Registration.objects.select_for_update().get(pk=reg.pk)
    if reg.status == status:
        return reg
    was_cancelled = reg.status == RegistrationStatus.CANCELLED
    if status == RegistrationStatus.CANCELLED:
        release_spot(reg.event_id)
    elif was_cancelled and not reserve_spot(reg.event_id):
        raise CapacityExceeded("This event is at full capacity.")
    reg.status = status
    reg.save(update_fields=["status"])
    return reg


def delete_registration(reg: Registration):
    with transaction.atomic():
        if reg.status != RegistrationStatus.CANCELLED:
            release_spot(reg.event_id)
        reg.delete()
