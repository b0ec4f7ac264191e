# events/export.py
import csv
import io

PLACEHOLDER = "—"


def format_value(value) -> str:
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if value is None or value == "":
        return PLACEHOLDER
    if isinstance(value, dict):
        # uploaded file metadata
        return str(value.get("name") or PLACEHOLDER)
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value) or PLACEHOLDER
    return str(value)


def build_submissions_csv(fields, submissions) -> str:
    """
    One column per field in ``order``, one row per submission.
    Answers to fields that no longer exist are dropped.
    """
    fields = sorted(fields, key=lambda f: (f.order, f.pk or 0))
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow([f.label for f in fields])
    for submission in submissions:
        responses = submission.responses or {}
        writer.writerow([format_value(responses.get(f.key)) for f in fields])
    return output.getvalue()


def export_submissions_csv(event) -> str:
    from .models import get_fields, list_submissions

    form = getattr(event, "registration_form", None)
    fields = get_fields(form.pk) if form else []
    return build_submissions_csv(fields, list_submissions(event.pk))


def export_registrations_csv(event) -> str:
    """Fixed-column export of the legacy registration form."""
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(["Full Name", "Email", "Phone", "Notes", "Status", "Registered At"])
    for reg in event.registrations.order_by("created_at"):
        writer.writerow([
            reg.full_name,
            reg.email,
            reg.phone,
            reg.notes,
            reg.get_status_display(),
            reg.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        ])
    return output.getvalue()
