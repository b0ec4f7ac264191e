# events/tests.py
import base64
import csv
import io
import json
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from django.contrib import admin as django_admin
from django.contrib.sessions.models import Session
from django.core.cache import cache
from django.db import DatabaseError, connection
from django.urls import reverse
from django.utils import timezone

from . import views
from .admin import FormFieldInline
from .analytics import registration_tracked, track_registration_event
from .choices import ConditionOperator, FieldType
from .conditions import evaluate, parse_rule, visible_fields
from .errors import (
    AlreadyRegistered, CapacityExceeded, FileTooLarge, FormInactive, InternalError, InvalidTransition,
    NotFound, RegistrationError, UnsupportedFileType, ValidationFailed,
)
from .export import PLACEHOLDER, export_submissions_csv, format_value
from .models import (
    Event, FormField, FormSubmission, Registration, RegistrationForm, SubmissionFile,
    add_field, delete_field, get_event_capacity, get_fields, get_or_create_event_form,
    get_public_event_form, register_for_event, reorder_field, reserve_spot, submit_dynamic_form,
    update_registration_status,
)
from .schema import FIELD_BUILDERS, generate_schema, validate_responses
from .uploads import UploadInfo, normalize_file_payload, validate_file
from .wizard import Failed, RegistrationWizard, Submitting

pytestmark = pytest.mark.django_db


@pytest.fixture(autouse=True)
def _clear_rate_limits():
    cache.clear()
    yield
    cache.clear()


def make_event(slug="beach-cleanup", max_attendees=None, **kwargs):
    defaults = dict(
        title="Beach Cleanup",
        start_at=timezone.now() + timezone.timedelta(days=7),
        is_published=True,
        max_attendees=max_attendees,
    )
    defaults.update(kwargs)
    return Event.objects.create(slug=slug, **defaults)


def make_form(event, active=True, total_steps=1):
    return RegistrationForm.objects.create(event=event, is_active=active, total_steps=total_steps)


def make_db_field(form, label, field_type=FieldType.TEXT, order=0, step=1, required=False, **kwargs):
    return FormField.objects.create(
        form=form, label=label, field_type=field_type, order=order, step=step, is_required=required, **kwargs
    )


def field_def(pk, label, field_type=FieldType.TEXT, step=1, required=False, **kwargs):
    """Unsaved definition for the pure schema / visibility / wizard tests."""
    return FormField(id=pk, label=label, field_type=field_type, step=step, is_required=required, **kwargs)


def file_payload(name, content):
    return {"name": name, "size": len(content), "type": "", "data": base64.b64encode(content).decode("ascii")}


# ----- Conditional logic -----

def test_equals_rule_follows_the_dependency_value():
    a = field_def(1, "Coming with a group?")
    b = field_def(2, "Group name", conditional_logic={"dependsOnFieldId": "1", "operator": "equals", "value": "yes"})
    fields = [a, b]
    assert b in visible_fields(fields, {"1": "yes"})
    assert b not in visible_fields(fields, {"1": "no"})
    assert b in visible_fields(fields, {"1": "yes"})


@pytest.mark.parametrize("value, visible", [(True, True), (False, False), ("true", False), ("on", False), (None, False)])
def test_is_checked_needs_exactly_true(value, visible):
    box = field_def(1, "Need transport", field_type=FieldType.CHECKBOX)
    pickup = field_def(2, "Pickup point", conditional_logic={"dependsOnFieldId": "1", "operator": "is_checked"})
    assert evaluate(pickup.conditional_logic, {"1": value}, [box, pickup]) is visible


def test_unresolvable_dependency_only_passes_not_equals():
    fields = [field_def(1, "Name")]
    for operator in ("equals", "contains", "is_checked"):
        assert evaluate({"dependsOnFieldId": "99", "operator": operator, "value": "x"}, {"99": "x"}, fields) is False
    assert evaluate({"dependsOnFieldId": "99", "operator": "not_equals", "value": "x"}, {}, fields) is True


def test_contains_and_not_equals():
    fields = [field_def(1, "Diet")]
    rule = {"dependsOnFieldId": "1", "operator": ConditionOperator.CONTAINS, "value": "vegan"}
    assert evaluate(rule, {"1": "Strictly Vegan"}, fields)
    assert not evaluate(rule, {"1": "none"}, fields)
    rule = {"dependsOnFieldId": "1", "operator": ConditionOperator.NOT_EQUALS, "value": "none"}
    assert evaluate(rule, {"1": "vegan"}, fields)
    assert not evaluate(rule, {"1": "none"}, fields)


def test_malformed_rules_mean_always_visible():
    fields = [field_def(1, "Name")]
    for raw in (None, "equals", {"operator": "equals"}, {"dependsOnFieldId": "1", "operator": "matches"}, []):
        assert parse_rule(raw) is None
        assert evaluate(raw, {}, fields) is True


def test_evaluation_is_idempotent():
    a = field_def(1, "A")
    b = field_def(2, "B", conditional_logic={"dependsOnFieldId": "1", "operator": "equals", "value": "yes"})
    values = {"1": "yes"}
    first = [evaluate(f.conditional_logic, values, [a, b]) for f in (a, b)]
    second = [evaluate(f.conditional_logic, values, [a, b]) for f in (a, b)]
    assert first == second == [True, True]
    assert values == {"1": "yes"}


def test_hidden_dependency_does_not_hide_dependants():
    a = field_def(1, "A", field_type=FieldType.CHECKBOX)
    b = field_def(2, "B", conditional_logic={"dependsOnFieldId": "1", "operator": "is_checked"})
    c = field_def(3, "C", conditional_logic={"dependsOnFieldId": "2", "operator": "equals", "value": "x"})
    visible = visible_fields([a, b, c], {"1": False, "2": "x"})
    assert [f.key for f in visible] == ["1", "3"]


# ----- Schema generation -----

def test_generate_schema_survives_malformed_definitions():
    fields = [
        field_def(1, "Meal", field_type=FieldType.SELECT, options=None, required=True),
        field_def(2, "Size", field_type=FieldType.RADIO, options="not a list"),
        field_def(3, "Mystery", field_type="HOLOGRAM"),
        field_def(4, "Notes", conditional_logic={"garbage": True}),
        field_def(5, "CV", field_type=FieldType.FILE, max_file_size="lots", accepted_types=""),
    ]
    schema = generate_schema(fields)
    form = schema(data={})
    assert set(form.fields) == {"1", "2", "3", "4", "5"}
    assert form.fields["1"].choices == [("", "Select an option...")]
    assert form.fields["2"].choices == []
    assert not form.is_valid()
    assert "1" in form.errors


def test_every_field_type_builds():
    assert set(FIELD_BUILDERS) == set(FieldType)
    fields = [field_def(i, t.label, field_type=t, options=["a"]) for i, t in enumerate(FieldType, start=1)]
    assert len(generate_schema(fields)().fields) == len(FieldType)


def test_required_checkbox_must_be_ticked():
    fields = [field_def(1, "I accept the code of conduct", field_type=FieldType.CHECKBOX, required=True)]
    with pytest.raises(ValidationFailed) as exc:
        validate_responses(fields, {"1": False})
    assert "1" in exc.value.errors
    assert validate_responses(fields, {"1": True}) == {"1": True}


def test_optional_checkbox_accepts_either():
    fields = [field_def(1, "Newsletter", field_type=FieldType.CHECKBOX)]
    assert validate_responses(fields, {"1": False}) == {"1": False}
    assert validate_responses(fields, {"1": True}) == {"1": True}


def test_typed_values_are_coerced_for_storage():
    fields = [
        field_def(1, "Guests", field_type=FieldType.NUMBER),
        field_def(2, "Arrival", field_type=FieldType.DATE),
        field_def(3, "Meal", field_type=FieldType.SELECT, options=["Veg", "Meat"]),
        field_def(4, "Email", field_type=FieldType.EMAIL),
    ]
    cleaned = validate_responses(fields, {"1": "3", "2": "2030-05-01", "3": "Veg", "4": ""})
    assert cleaned == {"1": 3, "2": "2030-05-01", "3": "Veg", "4": ""}


def test_invalid_values_are_reported_per_field():
    fields = [
        field_def(1, "Guests", field_type=FieldType.NUMBER),
        field_def(2, "Email", field_type=FieldType.EMAIL, required=True),
        field_def(3, "Meal", field_type=FieldType.SELECT, options=["Veg", "Meat"]),
    ]
    with pytest.raises(ValidationFailed) as exc:
        validate_responses(fields, {"1": "many", "2": "not-an-email", "3": "Fish"})
    assert set(exc.value.errors) == {"1", "2", "3"}
    assert exc.value.message == "Please correct: Guests, Email, Meal"


def test_json_numbers_and_structures_in_text_fields():
    fields = [
        field_def(1, "Arrival", field_type=FieldType.DATE),
        field_def(2, "Guests", field_type=FieldType.NUMBER),
        field_def(3, "Name"),
    ]
    assert validate_responses(fields, {"1": "2030-05-01", "2": 3, "3": "Ann"}) == {
        "1": "2030-05-01", "2": 3, "3": "Ann",
    }
    with pytest.raises(ValidationFailed) as exc:
        validate_responses(fields, {"1": 20300501, "2": 3, "3": ["Ann"]})
    assert set(exc.value.errors) == {"1", "3"}
    assert exc.value.errors["3"] == ["Enter a valid value."]


def test_hidden_required_field_does_not_block_and_is_dropped():
    a = field_def(1, "Bringing kids?", field_type=FieldType.CHECKBOX)
    b = field_def(2, "Number of kids", field_type=FieldType.NUMBER, required=True,
                  conditional_logic={"dependsOnFieldId": "1", "operator": "is_checked"})
    assert validate_responses([a, b], {"1": False, "2": "7"}) == {"1": False}
    with pytest.raises(ValidationFailed):
        validate_responses([a, b], {"1": True, "2": ""})


# ----- File validation -----

def test_validate_file_limits(settings):
    settings.REGISTRATION_MAX_UPLOAD_SIZE = 5 * 1024 * 1024
    with pytest.raises(FileTooLarge) as exc:
        validate_file(UploadInfo("cv.pdf", 2 * 1024 * 1024, "application/pdf"), max_file_size=1024 * 1024)
    assert exc.value.message == "File exceeds maximum size of 1.0MB"
    with pytest.raises(FileTooLarge):
        validate_file(UploadInfo("big.pdf", 6 * 1024 * 1024, "application/pdf"))


def test_validate_file_accepted_types():
    accepted = "image/*, .pdf"
    validate_file(UploadInfo("me.png", 10, "image/png"), accepted_types=accepted)
    validate_file(UploadInfo("CV.PDF", 10, "application/octet-stream"), accepted_types=accepted)
    with pytest.raises(UnsupportedFileType):
        validate_file(UploadInfo("setup.exe", 10, "application/x-msdownload"), accepted_types=accepted)
    # nothing configured means anything goes
    validate_file(UploadInfo("setup.exe", 10, "application/x-msdownload"), accepted_types="")


def test_normalize_file_payload_ignores_reported_metadata():
    raw = {"name": "../cv.pdf", "size": 1, "type": "image/png", "data": base64.b64encode(b"hello").decode()}
    payload = normalize_file_payload(raw)
    assert payload["name"] == "cv.pdf"
    assert payload["size"] == 5
    assert payload["type"] == "application/pdf"
    with pytest.raises(ValidationFailed):
        normalize_file_payload({"name": "cv.pdf", "data": "%%% not base64"})
    with pytest.raises(ValidationFailed):
        normalize_file_payload({"name": "cv.pdf", "data": ""})


# ----- Wizard -----

def two_step_fields():
    return [
        field_def(1, "Full Name", required=True),
        field_def(2, "Bringing a guest?", field_type=FieldType.CHECKBOX),
        field_def(3, "Guest name", step=2,
                  conditional_logic={"dependsOnFieldId": "2", "operator": "is_checked"}),
        field_def(4, "Emergency contact", step=2, required=True),
    ]


def test_current_step_fields_only_shows_visible_fields_of_that_step():
    wizard = RegistrationWizard(two_step_fields(), total_steps=2)
    assert [f.key for f in wizard.current_step_fields()] == ["1", "2"]
    wizard.next_step()
    assert [f.key for f in wizard.current_step_fields()] == ["4"]
    wizard.update({"2": True})
    assert [f.key for f in wizard.current_step_fields()] == ["3", "4"]
    assert all(f.step == 2 for f in wizard.current_step_fields())


def test_navigation_is_clamped():
    wizard = RegistrationWizard(two_step_fields(), total_steps=2)
    wizard.previous_step()
    assert wizard.current_step == 1 and wizard.is_first_step
    wizard.next_step()
    wizard.next_step()
    assert wizard.current_step == 2 and wizard.is_last_step
    assert wizard.progress == 100


def test_submit_with_missing_step_two_field_names_it():
    wizard = RegistrationWizard(two_step_fields(), total_steps=2)
    wizard.update({"1": "Ann"})
    wizard.next_step()
    with pytest.raises(ValidationFailed) as exc:
        wizard.begin_submit()
    assert list(exc.value.errors) == ["4"]
    assert "Emergency contact" in exc.value.message
    assert isinstance(wizard.state, Failed)
    assert wizard.current_step == 2
    assert wizard.values["1"] == "Ann"
    assert wizard.errors == {"4": ["This field is required."]}


def test_submit_returns_to_the_earliest_step_with_an_error():
    wizard = RegistrationWizard(two_step_fields(), total_steps=2)
    wizard.next_step()
    wizard.update({"4": "Mum"})
    with pytest.raises(ValidationFailed) as exc:
        wizard.begin_submit()
    assert list(exc.value.errors) == ["1"]
    assert isinstance(wizard.state, Failed)
    assert wizard.current_step == 1
    assert [f.key for f in wizard.current_step_fields()] == ["1", "2"]


def test_server_side_field_error_moves_back_to_its_step():
    wizard = RegistrationWizard(two_step_fields(), total_steps=2, values={"1": "Ann", "4": "Mum"})
    wizard.next_step()
    wizard.begin_submit()
    wizard.fail(ValidationFailed(errors={"1": ["Too long."]}))
    assert wizard.current_step == 1
    assert wizard.errors == {"1": ["Too long."]}

    wizard.next_step()
    wizard.begin_submit()
    wizard.fail(CapacityExceeded())
    assert wizard.current_step == 2


def test_submit_only_from_last_step():
    wizard = RegistrationWizard(two_step_fields(), total_steps=2)
    with pytest.raises(InvalidTransition):
        wizard.begin_submit()


def test_double_submit_and_terminal_state():
    wizard = RegistrationWizard([field_def(1, "Name", required=True)], values={"1": "Ann"})
    payload = wizard.begin_submit(now=100.0)
    assert payload == {"1": "Ann"}
    assert wizard.is_submitting
    with pytest.raises(InvalidTransition):
        wizard.begin_submit()
    wizard.complete(42)
    assert wizard.is_submitted and wizard.errors == {}
    with pytest.raises(InvalidTransition):
        wizard.update({"1": "Bob"})
    with pytest.raises(InvalidTransition):
        wizard.next_step()


def test_failed_submission_keeps_values_and_allows_retry():
    wizard = RegistrationWizard([field_def(1, "Name", required=True)], values={"1": "Ann"})
    wizard.begin_submit()
    wizard.fail(CapacityExceeded())
    assert wizard.error == CapacityExceeded.default_message
    assert wizard.values == {"1": "Ann"}
    wizard.begin_submit()
    assert wizard.is_submitting


def test_stale_submit_is_recovered():
    wizard = RegistrationWizard([field_def(1, "Name")])
    wizard.begin_submit(now=100.0)
    assert wizard.recover_if_stale(30, now=120.0) is False
    assert isinstance(wizard.state, Submitting)
    assert wizard.recover_if_stale(30, now=131.0) is True
    assert isinstance(wizard.state, Failed)
    assert "did not respond" in wizard.error


def test_wizard_survives_session_storage():
    fields = two_step_fields()
    wizard = RegistrationWizard(fields, total_steps=2)
    wizard.update({"1": "Ann", "unknown": "dropped"})
    wizard.mark_started()
    wizard.next_step()
    with pytest.raises(ValidationFailed):
        wizard.begin_submit()
    stored = json.loads(json.dumps(wizard.to_dict()))

    restored = RegistrationWizard.from_dict(fields, 2, stored)
    assert restored.state == wizard.state
    assert restored.values == wizard.values
    assert "unknown" not in restored.values
    assert restored.mark_started() is False

    # the form lost a step in the meantime
    shrunk = RegistrationWizard.from_dict(fields, 1, stored)
    assert shrunk.current_step == 1


def test_attach_file_is_checked_at_intake():
    cv = field_def(1, "CV", field_type=FieldType.FILE, accepted_types=".pdf", max_file_size=100)
    wizard = RegistrationWizard([cv])
    with pytest.raises(UnsupportedFileType) as exc:
        wizard.attach_file(cv, {"name": "cv.exe", "size": 10, "type": "application/x-msdownload"})
    assert exc.value.errors == {"1": ["File type application/x-msdownload is not allowed"]}
    with pytest.raises(FileTooLarge):
        wizard.attach_file(cv, {"name": "cv.pdf", "size": 101, "type": "application/pdf"})
    wizard.attach_file(cv, {"name": "cv.pdf", "size": 10, "type": "application/pdf", "data": ""})
    assert wizard.form_values()["1"]["name"] == "cv.pdf"


# ----- Field definition store -----

def test_new_form_is_seeded_and_inactive():
    event = make_event()
    form = get_or_create_event_form(event)
    assert form.is_active is False
    assert [(f.label, f.field_type) for f in get_fields(form.pk)] == [
        ("Full Name", FieldType.TEXT), ("Email Address", FieldType.EMAIL),
    ]
    assert get_or_create_event_form(event).pk == form.pk
    assert FormField.objects.filter(form=form).count() == 2


def test_add_reorder_delete_fields():
    form = get_or_create_event_form(make_event())
    added = add_field(form.pk, {"label": "T-shirt size", "field_type": FieldType.SELECT, "options": ["S", "M", ""]})
    assert added.order == 2
    assert added.option_list == ["S", "M"]

    reorder_field(added.pk, "up")
    assert [f.label for f in get_fields(form.pk)] == ["Full Name", "T-shirt size", "Email Address"]
    reorder_field(get_fields(form.pk)[0].pk, "up")
    assert [f.label for f in get_fields(form.pk)][0] == "Full Name"

    delete_field(added.pk)
    assert len(get_fields(form.pk)) == 2
    with pytest.raises(NotFound):
        delete_field(added.pk)


def test_file_limits_are_cleared_for_other_types():
    form = get_or_create_event_form(make_event())
    field = add_field(form.pk, {"label": "Bio", "field_type": FieldType.TEXT, "max_file_size": 10,
                                "accepted_types": ".pdf"})
    assert field.max_file_size is None and field.accepted_types == ""


def test_public_form_requires_active_form_with_fields():
    event = make_event()
    assert get_public_event_form(event) is None
    form = make_form(event, active=True)
    assert get_public_event_form(event) is None
    make_db_field(form, "Name")
    assert get_public_event_form(event) == form
    form.is_active = False
    form.save()
    assert get_public_event_form(event) is None


# ----- Submission handler -----

def simple_form(event, **kwargs):
    form = make_form(event, **kwargs)
    name = make_db_field(form, "Full Name", required=True, order=0)
    email = make_db_field(form, "Email", field_type=FieldType.EMAIL, required=True, order=1)
    return form, name, email


def test_submit_stores_response_and_takes_a_spot():
    event = make_event(max_attendees=10)
    form, name, email = simple_form(event)
    submission = submit_dynamic_form(event.pk, form.pk, {name.key: "Ann", email.key: "Ann@Example.org"})
    assert submission.responses == {name.key: "Ann", email.key: "Ann@Example.org"}
    assert submission.email == "ann@example.org"
    assert get_event_capacity(event.pk).spots_left == 9


def test_duplicate_email_is_rejected():
    event = make_event()
    form, name, email = simple_form(event)
    submit_dynamic_form(event.pk, form.pk, {name.key: "Ann", email.key: "ann@example.org"})
    with pytest.raises(AlreadyRegistered):
        submit_dynamic_form(event.pk, form.pk, {name.key: "Ann again", email.key: "ANN@example.org"})
    event.refresh_from_db()
    assert event.registered_count == 1


def test_step_two_required_field_is_rechecked_on_the_server():
    event = make_event()
    form = make_form(event, total_steps=2)
    name = make_db_field(form, "Full Name", required=True, step=1)
    contact = make_db_field(form, "Emergency contact", required=True, step=2, order=1)
    with pytest.raises(ValidationFailed) as exc:
        submit_dynamic_form(event.pk, form.pk, {name.key: "Ann"})
    assert list(exc.value.errors) == [contact.key]
    assert FormSubmission.objects.count() == 0


@pytest.mark.parametrize("model, change", [
    (RegistrationForm, {"is_active": False}),
    (Event, {"registration_closed": True}),
    (Event, {"allow_registration": False}),
])
def test_closed_registration_is_refused(model, change):
    event = make_event()
    form, name, email = simple_form(event)
    model.objects.filter(pk=form.pk if model is RegistrationForm else event.pk).update(**change)
    with pytest.raises(FormInactive):
        submit_dynamic_form(event.pk, form.pk, {name.key: "Ann", email.key: "a@example.org"})


def test_unknown_event_or_form():
    event = make_event()
    form, _, _ = simple_form(event)
    other = make_event(slug="other")
    with pytest.raises(NotFound):
        submit_dynamic_form(999999, form.pk, {})
    with pytest.raises(NotFound):
        submit_dynamic_form(other.pk, form.pk, {})
    with pytest.raises(NotFound):
        submit_dynamic_form(event.pk, "abc", {})


def test_numeric_date_answer_is_a_validation_error():
    event = make_event()
    form, name, email = simple_form(event)
    arrival = make_db_field(form, "Arrival", field_type=FieldType.DATE, order=2)
    with pytest.raises(ValidationFailed) as exc:
        submit_dynamic_form(event.pk, form.pk, {name.key: "Ann", email.key: "a@example.org", arrival.key: 20240101})
    assert list(exc.value.errors) == [arrival.key]
    assert FormSubmission.objects.count() == 0


def test_unexpected_failure_is_reported_as_internal_error(monkeypatch):
    event = make_event(max_attendees=5)
    form, name, email = simple_form(event)

    def broken(fields, responses):
        raise RuntimeError("boom")

    monkeypatch.setattr("events.models.validate_responses", broken)
    with pytest.raises(InternalError) as exc:
        submit_dynamic_form(event.pk, form.pk, {name.key: "Ann", email.key: "a@example.org"})
    assert exc.value.code == "internal_error" and exc.value.status == 500
    assert isinstance(exc.value.__cause__, RuntimeError)
    event.refresh_from_db()
    assert event.registered_count == 0


def test_capacity_is_never_exceeded_sequentially():
    event = make_event(max_attendees=2)
    form, name, email = simple_form(event)
    outcomes = []
    for i in range(5):
        try:
            submit_dynamic_form(event.pk, form.pk, {name.key: f"Person {i}", email.key: f"p{i}@example.org"})
            outcomes.append("ok")
        except CapacityExceeded:
            outcomes.append("full")
    assert outcomes == ["ok", "ok", "full", "full", "full"]
    event.refresh_from_db()
    assert event.registered_count == 2
    assert FormSubmission.objects.filter(event=event).count() == 2


def test_reserve_spot_is_conditional():
    event = make_event(max_attendees=1)
    assert reserve_spot(event.pk) is True
    assert reserve_spot(event.pk) is False
    unlimited = make_event(slug="open-day")
    assert all(reserve_spot(unlimited.pk) for _ in range(3))


@pytest.mark.django_db(transaction=True)
def test_capacity_holds_under_concurrent_submissions():
    event = make_event(max_attendees=1)
    form, name, email = simple_form(event)

    def attempt(i):
        try:
            submit_dynamic_form(event.pk, form.pk, {name.key: f"Racer {i}", email.key: f"r{i}@example.org"})
            return True
        except (RegistrationError, DatabaseError):
            return False
        finally:
            connection.close()

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, range(8)))

    stored = FormSubmission.objects.filter(event=event).count()
    event.refresh_from_db()
    assert sum(results) <= 1
    assert stored == sum(results)
    assert event.registered_count == stored


def test_file_answer_is_stored(settings, tmp_path):
    settings.MEDIA_ROOT = tmp_path
    event = make_event()
    form = make_form(event)
    name = make_db_field(form, "Full Name", required=True)
    cv = make_db_field(form, "CV", field_type=FieldType.FILE, order=1, accepted_types=".pdf", max_file_size=1000)
    content = b"%PDF-1.4 resume"
    submission = submit_dynamic_form(event.pk, form.pk, {name.key: "Ann", cv.key: file_payload("cv.pdf", content)})
    assert submission.responses[cv.key] == {"name": "cv.pdf", "size": len(content), "type": "application/pdf"}
    stored = SubmissionFile.objects.get(submission=submission)
    assert stored.field_id == cv.key
    assert stored.mime_type == "application/pdf"
    with stored.file.open("rb") as fh:
        assert fh.read() == content


def test_file_answer_is_rechecked_on_the_server(settings, tmp_path):
    settings.MEDIA_ROOT = tmp_path
    event = make_event()
    form = make_form(event)
    cv = make_db_field(form, "CV", field_type=FieldType.FILE, accepted_types=".pdf", max_file_size=4)
    lying = file_payload("cv.pdf", b"far too long")
    lying["size"] = 1
    with pytest.raises(FileTooLarge) as exc:
        submit_dynamic_form(event.pk, form.pk, {cv.key: lying})
    assert cv.key in exc.value.errors
    with pytest.raises(UnsupportedFileType):
        submit_dynamic_form(event.pk, form.pk, {cv.key: file_payload("cv.exe", b"MZ")})
    assert not FormSubmission.objects.exists()


# ----- Export -----

def test_export_flattens_submissions_in_field_order():
    event = make_event()
    form = make_form(event)
    meal = make_db_field(form, "Meal", field_type=FieldType.SELECT, order=2, options=["Veg", "Meat"])
    name = make_db_field(form, "Name", order=0)
    attending = make_db_field(form, "Attending", field_type=FieldType.CHECKBOX, order=1)
    FormSubmission.objects.create(event=event, form=form, responses={
        meal.key: "Veg", name.key: "Ann", attending.key: True,
    })
    FormSubmission.objects.create(event=event, form=form, responses={
        name.key: "Bob", attending.key: False, "424242": "orphaned answer",
    })

    rows = list(csv.reader(io.StringIO(export_submissions_csv(event))))
    assert rows == [
        ["Name", "Attending", "Meal"],
        ["Ann", "Yes", "Veg"],
        ["Bob", "No", PLACEHOLDER],
    ]


def test_export_without_form_is_just_an_empty_header():
    event = make_event()
    assert list(csv.reader(io.StringIO(export_submissions_csv(event)))) == [[]]


def test_format_value():
    assert format_value({"name": "cv.pdf", "size": 3, "type": "application/pdf"}) == "cv.pdf"
    assert format_value("") == PLACEHOLDER
    assert format_value(None) == PLACEHOLDER
    assert format_value(3) == "3"


def test_deleting_a_field_leaves_stored_answers_alone():
    event = make_event()
    form, name, email = simple_form(event)
    submission = submit_dynamic_form(event.pk, form.pk, {name.key: "Ann", email.key: "a@example.org"})
    delete_field(name.pk)
    submission.refresh_from_db()
    assert submission.responses[name.key] == "Ann"
    rows = list(csv.reader(io.StringIO(export_submissions_csv(event))))
    assert rows == [["Email"], ["a@example.org"]]


# ----- Analytics -----

def test_analytics_never_raises_into_the_flow():
    seen = []

    def broken(**kwargs):
        raise RuntimeError("collector down")

    def recorder(**kwargs):
        seen.append((kwargs["event_slug"], kwargs["step"], kwargs["error_message"]))

    registration_tracked.connect(broken, weak=False)
    registration_tracked.connect(recorder, weak=False)
    try:
        track_registration_event("beach-cleanup", "error", "Event is full")
    finally:
        registration_tracked.disconnect(broken)
        registration_tracked.disconnect(recorder)
    assert seen == [("beach-cleanup", "error", "Event is full")]


# ----- Legacy registration -----

def test_legacy_registration_and_cancellation():
    event = make_event(max_attendees=1)
    reg = register_for_event(event, "Ann Lee", "Ann@Example.org")
    assert reg.email == "ann@example.org"
    with pytest.raises(AlreadyRegistered):
        register_for_event(event, "Ann Lee", "ann@example.org")
    with pytest.raises(CapacityExceeded):
        register_for_event(event, "Bob", "bob@example.org")

    update_registration_status(reg, "cancelled")
    event.refresh_from_db()
    assert event.registered_count == 0
    register_for_event(event, "Bob", "bob@example.org")
    with pytest.raises(CapacityExceeded):
        update_registration_status(reg, "confirmed")


def test_legacy_registration_after_start_is_refused():
    event = make_event(start_at=timezone.now() - timezone.timedelta(hours=1))
    with pytest.raises(FormInactive):
        register_for_event(event, "Ann", "ann@example.org")


# ----- Views -----

def test_detail_page_falls_back_to_legacy_form(client):
    event = make_event()
    url = reverse("event_detail", args=[event.slug])
    res = client.get(url)
    assert res.status_code == 200
    assert res.context["uses_dynamic_form"] is False
    assert res.context["legacy_form"] is not None

    simple_form(event)
    res = client.get(url)
    assert res.context["uses_dynamic_form"] is True
    assert res.context["legacy_form"] is None


def test_low_capacity_notice(client):
    event = make_event(max_attendees=12, registered_count=5)
    res = client.get(reverse("event_detail", args=[event.slug]))
    assert res.context["low_capacity"] is True
    assert b"Only 7 spots left!" in res.content


def test_legacy_post_registers(client):
    event = make_event()
    res = client.post(reverse("register_legacy", args=[event.slug]), {"full_name": "Ann Lee", "email": "ann@example.org"})
    assert res.status_code == 302
    assert Registration.objects.filter(event=event, email="ann@example.org").exists()


def test_wizard_walkthrough(client):
    event = make_event()
    form = make_form(event, total_steps=2)
    name = make_db_field(form, "Full Name", required=True, step=1)
    email = make_db_field(form, "Email", field_type=FieldType.EMAIL, required=True, step=1, order=1)
    shirt = make_db_field(form, "T-shirt", field_type=FieldType.SELECT, options=["S", "M"], step=2, order=2,
                          required=True)
    url = reverse("register_dynamic", args=[event.slug])

    res = client.get(url)
    assert res.status_code == 200
    assert set(res.context["step_form"].fields) == {name.key, email.key}

    client.post(url, {"action": "next", name.key: "Ann", email.key: "ann@example.org"})
    res = client.get(url)
    assert res.context["wizard"].current_step == 2
    assert set(res.context["step_form"].fields) == {shirt.key}

    # submit without the step-2 answer keeps us on the step with the error
    client.post(url, {"action": "submit"})
    res = client.get(url)
    assert res.context["wizard"].errors == {shirt.key: ["This field is required."]}
    assert res.context["step_form"].errors[shirt.key]
    assert FormSubmission.objects.count() == 0

    client.post(url, {"action": "submit", shirt.key: "M"})
    res = client.get(url)
    assert b"Registration complete!" in res.content
    submission = FormSubmission.objects.get()
    assert submission.responses == {name.key: "Ann", email.key: "ann@example.org", shirt.key: "M"}

    # confirmation is shown once, then a fresh wizard starts
    res = client.get(url)
    assert res.context["wizard"].current_step == 1


def test_wizard_redirects_without_active_form(client):
    event = make_event()
    res = client.get(reverse("register_dynamic", args=[event.slug]))
    assert res.status_code == 302
    assert res.url == reverse("event_detail", args=[event.slug])


def test_wizard_shows_fields_revealed_on_the_same_step(client):
    event = make_event()
    form = make_form(event, total_steps=2)
    group = make_db_field(form, "Coming with a group?", step=1)
    group_name = make_db_field(form, "Group name", step=1, order=1, required=True,
                               conditional_logic={"dependsOnFieldId": str(group.pk), "operator": "equals",
                                                  "value": "yes"})
    contact = make_db_field(form, "Emergency contact", step=2, order=2)
    url = reverse("register_dynamic", args=[event.slug])

    res = client.get(url)
    assert set(res.context["step_form"].fields) == {group.key}

    client.post(url, {"action": "next", group.key: "yes"})
    res = client.get(url)
    assert res.context["wizard"].current_step == 1
    assert set(res.context["step_form"].fields) == {group.key, group_name.key}
    assert b"Please fill in the additional fields below." in res.content

    client.post(url, {"action": "next", group.key: "yes", group_name.key: "Dune Rangers"})
    res = client.get(url)
    assert res.context["wizard"].current_step == 2

    client.post(url, {"action": "submit", contact.key: "Mum"})
    assert FormSubmission.objects.get().responses == {
        group.key: "yes", group_name.key: "Dune Rangers", contact.key: "Mum",
    }


def test_wizard_stores_submitting_before_the_handler_runs(client, monkeypatch):
    event = make_event()
    form, name, email = simple_form(event)
    url = reverse("register_dynamic", args=[event.slug])
    seen = []

    def recording_submit(event_id, form_id, responses):
        stored = Session.objects.get().get_decoded()[f"registration-wizard:{event.pk}"]
        seen.append(stored["state"]["kind"])
        return submit_dynamic_form(event_id, form_id, responses)

    monkeypatch.setattr(views, "submit_dynamic_form", recording_submit)
    client.post(url, {"action": "submit", name.key: "Ann", email.key: "ann@example.org"})
    assert seen == ["submitting"]
    assert FormSubmission.objects.count() == 1


def test_wizard_refuses_a_second_submit_while_one_is_in_flight(client):
    event = make_event()
    form, name, email = simple_form(event)
    url = reverse("register_dynamic", args=[event.slug])
    wizard = RegistrationWizard(get_fields(form.pk), values={name.key: "Ann", email.key: "ann@example.org"})
    wizard.begin_submit(now=time.time())
    session = client.session
    session[f"registration-wizard:{event.pk}"] = wizard.to_dict()
    session.save()

    client.post(url, {"action": "submit", name.key: "Ann", email.key: "ann@example.org"})
    assert FormSubmission.objects.count() == 0
    res = client.get(url)
    assert res.context["wizard"].is_submitting
    assert b"Submitting..." in res.content


def test_wizard_failed_submit_reopens_the_step_with_the_error(client):
    event = make_event()
    form = make_form(event, total_steps=2)
    name = make_db_field(form, "Full Name", required=True, step=1)
    email = make_db_field(form, "Email", field_type=FieldType.EMAIL, required=True, step=1, order=1)
    shirt = make_db_field(form, "T-shirt", field_type=FieldType.SELECT, options=["S", "M"], step=2, order=2)
    url = reverse("register_dynamic", args=[event.slug])

    client.post(url, {"action": "next", name.key: "Ann", email.key: "not-an-email"})
    client.post(url, {"action": "submit", shirt.key: "M"})
    res = client.get(url)
    assert res.context["wizard"].current_step == 1
    assert email.key in res.context["step_form"].errors
    assert FormSubmission.objects.count() == 0

    client.post(url, {"action": "next", name.key: "Ann", email.key: "ann@example.org"})
    client.post(url, {"action": "submit", shirt.key: "M"})
    assert FormSubmission.objects.get().email == "ann@example.org"


def test_rate_limit_ignores_forwarded_for_header(client):
    event = make_event()
    url = reverse("register_legacy", args=[event.slug])
    codes = [
        client.post(url, {"full_name": ""}, HTTP_X_FORWARDED_FOR=f"10.0.0.{i}").status_code
        for i in range(21)
    ]
    assert codes[:20] == [400] * 20
    assert codes[-1] == 429


def post_json(client, url, body):
    return client.post(url, data=json.dumps(body), content_type="application/json")


def test_submit_api_codes(client):
    event = make_event(max_attendees=1)
    form, name, email = simple_form(event)
    url = reverse("submit_registration_api", args=[event.slug])

    res = post_json(client, url, {"formId": form.pk, "responses": {name.key: "", email.key: "nope"}})
    assert res.status_code == 400
    body = res.json()
    assert body["success"] is False and body["code"] == "validation_failed"
    assert set(body["errors"]) == {name.key, email.key}

    res = post_json(client, url, {"formId": form.pk, "responses": {name.key: "Ann", email.key: "a@example.org"}})
    assert res.status_code == 201
    assert res.json()["submissionId"] == FormSubmission.objects.get().pk

    res = post_json(client, url, {"formId": form.pk, "responses": {name.key: "Bob", email.key: "b@example.org"}})
    assert res.status_code == 409
    assert res.json()["code"] == "capacity_exceeded"

    res = post_json(client, reverse("submit_registration_api", args=["no-such-event"]), {"formId": 1})
    assert res.status_code == 404
    assert res.json()["code"] == "not_found"

    res = client.post(url, data="{not json", content_type="application/json")
    assert res.status_code == 400


def test_submit_api_is_rate_limited(client):
    event = make_event()
    url = reverse("submit_registration_api", args=[event.slug])
    codes = [post_json(client, url, {"formId": 0, "responses": {}}).status_code for _ in range(21)]
    assert codes[-1] == 429


def test_submit_api_answers_json_for_odd_values(client, monkeypatch):
    event = make_event()
    form, name, email = simple_form(event)
    arrival = make_db_field(form, "Arrival", field_type=FieldType.DATE, order=2)
    url = reverse("submit_registration_api", args=[event.slug])
    answers = {name.key: "Ann", email.key: "a@example.org"}

    res = post_json(client, url, {"formId": form.pk, "responses": {**answers, arrival.key: 20240101}})
    assert res.status_code == 400
    assert res.json()["code"] == "validation_failed"
    assert list(res.json()["errors"]) == [arrival.key]

    monkeypatch.setattr("events.models.validate_responses", lambda fields, responses: 1 / 0)
    res = post_json(client, url, {"formId": form.pk, "responses": answers})
    assert res.status_code == 500
    assert res.json()["code"] == "internal_error"


# ----- Staff pages -----

def test_staff_pages_need_staff(client):
    event = make_event()
    res = client.get(reverse("export_submissions", args=[event.pk]))
    assert res.status_code == 302


def test_export_download(admin_client):
    event = make_event()
    form, name, email = simple_form(event)
    submit_dynamic_form(event.pk, form.pk, {name.key: "Ann", email.key: "a@example.org"})
    res = admin_client.get(reverse("export_submissions", args=[event.pk]))
    assert res.status_code == 200
    assert res["Content-Type"].startswith("text/csv")
    assert f'filename="{event.slug}-submissions-' in res["Content-Disposition"]
    assert res.content.decode().splitlines() == ["Full Name,Email", "Ann,a@example.org"]


def test_form_builder_adds_and_validates_fields(admin_client):
    event = make_event()
    form = get_or_create_event_form(event)
    url = reverse("field_add", args=[event.pk])
    base = {"label": "Meal", "placeholder": "", "field_type": FieldType.SELECT, "step": 1,
            "depends_on": "", "operator": "", "condition_value": ""}

    res = admin_client.post(url, {**base, "options": ""})
    assert res.status_code == 400
    assert "options" in res.context["field_form"].errors

    res = admin_client.post(url, {**base, "step": 2, "options": "Veg\nMeat"})
    assert res.status_code == 400
    assert "step" in res.context["field_form"].errors

    res = admin_client.post(url, {**base, "options": "Veg\nMeat"})
    assert res.status_code == 302
    added = get_fields(form.pk)[-1]
    assert added.options == ["Veg", "Meat"]


def test_form_builder_conditional_rules(admin_client):
    event = make_event()
    form = get_or_create_event_form(event)
    name, email = get_fields(form.pk)
    base = {"placeholder": "", "field_type": FieldType.TEXT, "step": 1, "options": ""}

    admin_client.post(reverse("field_add", args=[event.pk]), {
        **base, "label": "Nickname", "depends_on": name.key, "operator": "not_equals", "condition_value": "",
    })
    nickname = get_fields(form.pk)[-1]
    assert nickname.rule.depends_on == name.key

    # name is depended on, so it cannot take a rule of its own
    res = admin_client.post(reverse("field_edit", args=[name.pk]), {
        **base, "label": "Full Name", "depends_on": email.key, "operator": "equals", "condition_value": "x",
    })
    assert res.status_code == 200
    assert "depends_on" in res.context["field_form"].errors


def test_settings_refuse_fewer_steps_than_in_use(admin_client):
    event = make_event()
    form = get_or_create_event_form(event)
    form.total_steps = 2
    form.save()
    FormField.objects.filter(form=form, label="Email Address").update(step=2)
    admin_client.post(reverse("form_settings", args=[event.pk]), {"is_active": "on", "total_steps": 1})
    form.refresh_from_db()
    assert form.total_steps == 2
    admin_client.post(reverse("form_settings", args=[event.pk]), {"is_active": "on", "total_steps": 3})
    form.refresh_from_db()
    assert form.total_steps == 3 and form.is_active is True


def test_submissions_page_lists_answers(admin_client):
    event = make_event()
    form, name, email = simple_form(event)
    submit_dynamic_form(event.pk, form.pk, {name.key: "Ann", email.key: "a@example.org"})
    register_for_event(event, "Bob", "bob@example.org")
    res = admin_client.get(reverse("event_submissions", args=[event.pk]))
    assert res.status_code == 200
    assert res.context["submission_count"] == 1
    assert res.context["rows"][0]["cells"] == ["Ann", "a@example.org"]
    assert [r.full_name for r in res.context["registrations"]] == ["Bob"]


def test_deleting_a_legacy_registration_frees_its_spot(admin_client):
    event = make_event(max_attendees=1)
    reg = register_for_event(event, "Ann", "ann@example.org")
    admin_client.post(reverse("admin:events_registration_delete", args=[reg.pk]), {"post": "yes"})
    event.refresh_from_db()
    assert not Registration.objects.exists()
    assert event.registered_count == 0


def test_submissions_cannot_be_deleted_from_the_admin(admin_client):
    event = make_event(max_attendees=1)
    form, name, email = simple_form(event)
    submission = submit_dynamic_form(event.pk, form.pk, {name.key: "Ann", email.key: "a@example.org"})
    res = admin_client.post(reverse("admin:events_formsubmission_delete", args=[submission.pk]), {"post": "yes"})
    assert res.status_code == 403
    assert FormSubmission.objects.filter(pk=submission.pk).exists()
    event.refresh_from_db()
    assert event.registered_count == 1


def test_field_inline_leaves_steps_and_rules_to_the_form_builder():
    inline = FormFieldInline(RegistrationForm, django_admin.site)
    assert {"step", "conditional_logic"} <= set(inline.get_readonly_fields(None))
