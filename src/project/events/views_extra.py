# events/views_extra.py
"""Staff pages: form builder, submissions table and CSV downloads."""
from django.contrib import messages
from django.http import HttpResponse
from django.shortcuts import get_object_or_404, redirect, render
from django.utils import timezone
from django.views.decorators.http import require_POST

from .errors import CapacityExceeded, NotFound
from .export import export_registrations_csv, export_submissions_csv, format_value
from .forms import FormFieldForm, RegistrationFormSettingsForm, RegistrationStatusForm, ReorderForm
from .models import (
    Event, FormField, Registration,
    add_field, count_submissions, delete_field, get_fields, get_or_create_event_form, list_submissions,
    reorder_field, toggle_form_active, update_field, update_form_settings, update_registration_status,
)
from .permissions import admin_required


def _csv_response(content: str, filename: str) -> HttpResponse:
    response = HttpResponse(content, content_type="text/csv; charset=utf-8")
    response["Content-Disposition"] = f'attachment; filename="{filename}"'
    return response


# ----- Form builder -----
@admin_required
def form_builder(request, event_id):
    event = get_object_or_404(Event, pk=event_id)
    form = get_or_create_event_form(event)
    return render(request, "events/manage/form_builder.html", {
        "event": event,
        "form": form,
        "fields": get_fields(form.pk),
        "settings_form": RegistrationFormSettingsForm(instance=form),
        "field_form": FormFieldForm(registration_form=form),
    })


@admin_required
@require_POST
def form_settings(request, event_id):
    event = get_object_or_404(Event, pk=event_id)
    form = get_or_create_event_form(event)
    settings_form = RegistrationFormSettingsForm(request.POST, instance=form)
    if settings_form.is_valid():
        update_form_settings(form.pk, settings_form.cleaned_data["is_active"], settings_form.cleaned_data["total_steps"])
        messages.success(request, "Form settings saved.")
    else:
        for error in settings_form.errors.get("total_steps", []):
            messages.error(request, error)
    return redirect("form_builder", event_id=event.pk)


@admin_required
@require_POST
def form_toggle(request, event_id):
    event = get_object_or_404(Event, pk=event_id)
    form = get_or_create_event_form(event)
    form = toggle_form_active(form.pk, not form.is_active)
    messages.success(request, "Registration form enabled." if form.is_active else "Registration form disabled.")
    return redirect("form_builder", event_id=event.pk)


@admin_required
@require_POST
def field_add(request, event_id):
    event = get_object_or_404(Event, pk=event_id)
    form = get_or_create_event_form(event)
    field_form = FormFieldForm(request.POST, registration_form=form)
    if not field_form.is_valid():
        return render(request, "events/manage/form_builder.html", {
            "event": event,
            "form": form,
            "fields": get_fields(form.pk),
            "settings_form": RegistrationFormSettingsForm(instance=form),
            "field_form": field_form,
        }, status=400)
    add_field(form.pk, field_form.field_data())
    messages.success(request, "Field added.")
    return redirect("form_builder", event_id=event.pk)


@admin_required
def field_edit(request, field_id):
    field = get_object_or_404(FormField.objects.select_related("form__event"), pk=field_id)
    form = field.form
    if request.method == "POST":
        field_form = FormFieldForm(request.POST, instance=field, registration_form=form)
        if field_form.is_valid():
            update_field(field.pk, field_form.field_data())
            messages.success(request, "Field updated.")
            return redirect("form_builder", event_id=form.event_id)
    else:
        field_form = FormFieldForm(instance=field, registration_form=form)
    return render(request, "events/manage/field_edit.html", {
        "event": form.event, "field": field, "field_form": field_form,
    })


@admin_required
@require_POST
def field_delete(request, field_id):
    field = get_object_or_404(FormField.objects.select_related("form"), pk=field_id)
    event_id = field.form.event_id
    try:
        delete_field(field.pk)
        messages.success(request, "Field deleted.")
    except NotFound as e:
        messages.error(request, e.message)
    return redirect("form_builder", event_id=event_id)


@admin_required
@require_POST
def field_reorder(request, field_id):
    field = get_object_or_404(FormField.objects.select_related("form"), pk=field_id)
    reorder = ReorderForm(request.POST)
    if reorder.is_valid():
        reorder_field(field.pk, reorder.cleaned_data["direction"])
    else:
        messages.error(request, "Invalid request.")
    return redirect("form_builder", event_id=field.form.event_id)


# ----- Submissions -----
@admin_required
def event_submissions(request, event_id):
    event = get_object_or_404(Event, pk=event_id)
    form = getattr(event, "registration_form", None)
    fields = get_fields(form.pk) if form else []
    rows = [
        {"submission": s, "cells": [format_value((s.responses or {}).get(f.key)) for f in fields]}
        for s in list_submissions(event.pk)
    ]
    return render(request, "events/manage/submissions.html", {
        "event": event,
        "fields": fields,
        "rows": rows,
        "submission_count": count_submissions(event.pk),
        "registrations": event.registrations.all(),
        "status_form": RegistrationStatusForm(),
    })


@admin_required
def export_submissions(request, event_id):
    event = get_object_or_404(Event, pk=event_id)
    filename = f"{event.slug}-submissions-{timezone.localdate().isoformat()}.csv"
    return _csv_response(export_submissions_csv(event), filename)


@admin_required
def export_registrations(request, event_id):
    event = get_object_or_404(Event, pk=event_id)
    filename = f"{event.slug}-registrations-{timezone.localdate().isoformat()}.csv"
    return _csv_response(export_registrations_csv(event), filename)


@admin_required
@require_POST
def registration_status(request, pk):
    reg = get_object_or_404(Registration, pk=pk)
    status_form = RegistrationStatusForm(request.POST)
    if not status_form.is_valid():
        messages.error(request, "Invalid request.")
        return redirect("event_submissions", event_id=reg.event_id)
    try:
        update_registration_status(reg, status_form.cleaned_data["status"])
        messages.success(request, "Registration updated.")
    except CapacityExceeded as e:
        messages.error(request, e.message)
    return redirect("event_submissions", event_id=reg.event_id)
