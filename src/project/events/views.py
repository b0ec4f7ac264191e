# events/views.py
import json
import logging

from django.conf import settings
from django.contrib import messages
from django.http import JsonResponse
from django.shortcuts import get_object_or_404, redirect, render
from django.utils import timezone
from django.views.decorators.http import require_http_methods, require_POST

from .analytics import track_registration_event
from .choices import FieldType
from .errors import (
    FileTooLarge, InvalidTransition, NotFound, RegistrationError, UnsupportedFileType, ValidationFailed,
)
from .forms import EventRegistrationForm
from .models import (
    Event, get_event_capacity, get_fields, get_public_event_form, register_for_event, submit_dynamic_form,
)
from .schema import bind_schema, generate_schema
from .throttling import simple_rate_limit
from .uploads import read_upload
from .wizard import RegistrationWizard

logger = logging.getLogger(__name__)

# the "only N spots left" notice starts at this many remaining places
LOW_CAPACITY_THRESHOLD = 10


def event_list(request):
    now = timezone.now()
    events = Event.objects.filter(is_published=True)
    return render(request, "events/event_list.html", {
        "upcoming": events.filter(start_at__gte=now).order_by("start_at"),
        "past": events.filter(start_at__lt=now).order_by("-start_at"),
    })


def event_detail(request, slug):
    """Shows the dynamic wizard link when an active form exists, the legacy form otherwise."""
    event = get_object_or_404(Event, slug=slug, is_published=True)
    capacity = get_event_capacity(event.pk)
    dynamic_form = get_public_event_form(event)
    return render(request, "events/event_detail.html", {
        "event": event,
        "capacity": capacity,
        "low_capacity": capacity.spots_left is not None and 0 < capacity.spots_left <= LOW_CAPACITY_THRESHOLD,
        "uses_dynamic_form": dynamic_form is not None,
        "legacy_form": None if dynamic_form else EventRegistrationForm(),
    })


@require_POST
@simple_rate_limit("event_reg", limit=20, window_sec=60)
def register_legacy(request, slug):
    event = get_object_or_404(Event, slug=slug, is_published=True)
    form = EventRegistrationForm(request.POST)
    if not form.is_valid():
        messages.error(request, "Please check the highlighted fields.")
        return render(request, "events/event_detail.html", {
            "event": event,
            "capacity": get_event_capacity(event.pk),
            "uses_dynamic_form": False,
            "legacy_form": form,
        }, status=400)
    try:
        register_for_event(event, **form.cleaned_data)
    except RegistrationError as e:
        messages.error(request, e.message)
        track_registration_event(event.slug, "error", e.message)
    else:
        messages.success(request, f"Thank you for registering for {event.title}.")
        track_registration_event(event.slug, "success")
    return redirect("event_detail", slug=event.slug)


# ----- Dynamic multi-step registration -----

def _wizard_key(event) -> str:
    return f"registration-wizard:{event.pk}"


def _load_wizard(request, event, form, fields) -> RegistrationWizard:
    data = request.session.get(_wizard_key(event))
    return RegistrationWizard.from_dict(fields, form.total_steps, data)


def _save_wizard(request, event, wizard):
    request.session[_wizard_key(event)] = wizard.to_dict()


def _collect_step(wizard, request):
    """Copy the posted values of the current step into the wizard."""
    step_fields = wizard.current_step_fields()
    bound = generate_schema(step_fields)(request.POST, request.FILES)
    wizard.update({
        f.key: bound[f.key].data for f in step_fields if f.field_type != FieldType.FILE
    })
    for f in step_fields:
        upload = request.FILES.get(f.key)
        if f.field_type == FieldType.FILE and upload is not None:
            wizard.attach_file(f, read_upload(upload))


def _submit_wizard(request, event, form, wizard):
    try:
        payload = wizard.begin_submit()
    except ValidationFailed as e:
        track_registration_event(event.slug, "error", e.message)
        return
    # written to the session store now, not with the response, so a second
    # POST sees Submitting and a hung request can be recovered
    _save_wizard(request, event, wizard)
    request.session.save()
    try:
        submission = submit_dynamic_form(event.pk, form.pk, payload)
    except RegistrationError as e:
        wizard.fail(e)
        track_registration_event(event.slug, "error", e.message)
    else:
        wizard.complete(submission.pk)
        track_registration_event(event.slug, "success")


@require_http_methods(["GET", "POST"])
@simple_rate_limit("dyn_reg", limit=60, window_sec=60)
def register_dynamic(request, slug):
    event = get_object_or_404(Event, slug=slug, is_published=True)
    form = get_public_event_form(event)
    if form is None:
        return redirect("event_detail", slug=event.slug)
    fields = get_fields(form.pk)
    wizard = _load_wizard(request, event, form, fields)

    if wizard.recover_if_stale(settings.REGISTRATION_SUBMIT_TIMEOUT):
        track_registration_event(event.slug, "error", wizard.error)
        _save_wizard(request, event, wizard)

    if request.method == "POST":
        if wizard.mark_started():
            track_registration_event(event.slug, "start")
        action = request.POST.get("action", "next")
        shown = {f.key for f in wizard.current_step_fields()}
        try:
            _collect_step(wizard, request)
            revealed = [f for f in wizard.current_step_fields() if f.key not in shown]
            if revealed and action != "back":
                # answers on this step made more fields appear; show them first
                messages.info(request, "Please fill in the additional fields below.")
            elif action == "back":
                wizard.previous_step()
            elif action == "submit":
                _submit_wizard(request, event, form, wizard)
            else:
                wizard.next_step()
        except (FileTooLarge, UnsupportedFileType) as e:
            messages.error(request, e.message)
        except InvalidTransition as e:
            messages.error(request, str(e))
        _save_wizard(request, event, wizard)
        return redirect("register_dynamic", slug=event.slug)

    step_fields = wizard.current_step_fields()
    if wizard.errors:
        # bound to the kept values so each control shows its own message
        step_form = bind_schema(step_fields, wizard.form_values())
        step_form.is_valid()
    else:
        step_form = generate_schema(step_fields)(initial=wizard.values)

    context = {
        "event": event,
        "capacity": get_event_capacity(event.pk),
        "wizard": wizard,
        "step_form": step_form,
        "file_data": {k: v for k, v in wizard.file_data.items() if k in step_form.fields},
    }
    response = render(request, "events/registration_wizard.html", context)
    if wizard.is_submitted:
        # confirmation shown once; a later visit starts a fresh wizard
        request.session.pop(_wizard_key(event), None)
    return response


@require_POST
@simple_rate_limit("dyn_submit", limit=20, window_sec=60)
def submit_registration_api(request, slug):
    """
    JSON entry point for a complete dynamic registration.

    Body: {"formId": ..., "responses": {field id: value}}. File answers are
    {"name", "type", "data"} with base64 content.
    """
    event = Event.objects.filter(slug=slug).first()
    try:
        if event is None:
            raise NotFound("Event not found.")
        try:
            body = json.loads(request.body or b"{}")
        except ValueError:
            raise ValidationFailed("Request body is not valid JSON.")
        if not isinstance(body, dict) or not isinstance(body.get("responses", {}), dict):
            raise ValidationFailed("Responses must be an object keyed by field id.")
        submission = submit_dynamic_form(event.pk, body.get("formId"), body.get("responses") or {})
    except RegistrationError as e:
        if event is not None:
            track_registration_event(event.slug, "error", e.message)
        return JsonResponse(e.as_dict(), status=e.status)
    track_registration_event(event.slug, "success")
    return JsonResponse({"success": True, "submissionId": submission.pk}, status=201)
