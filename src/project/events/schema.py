# events/schema.py
"""
Runtime validation schema for dynamic registration forms.

``generate_schema`` turns a list of field definitions into a Django Form
class. The wizard view and the submission handler both validate through
``validate_responses`` so the browser-facing and server-side rules are the
same code.
"""
import datetime

from django import forms
from django.core.exceptions import ValidationError

from .choices import FieldType
from .conditions import visible_fields
from .errors import FileTooLarge, UnsupportedFileType, ValidationFailed
from .uploads import UploadInfo, validate_file


class FileMetadataField(forms.Field):
    """Holds ``{name, size, type}`` for an upload; the content travels separately."""

    widget = forms.FileInput

    def __init__(self, *, max_file_size=None, accepted_types=None, **kwargs):
        self.max_file_size = max_file_size
        self.accepted_types = accepted_types
        super().__init__(**kwargs)
        if accepted_types:
            self.widget.attrs["accept"] = accepted_types

    def to_python(self, value):
        if value in self.empty_values:
            return None
        if not isinstance(value, dict) or not value.get("name"):
            raise ValidationError("Upload a valid file.", code="invalid")
        try:
            size = int(value.get("size") or 0)
        except (TypeError, ValueError):
            raise ValidationError("Upload a valid file.", code="invalid")
        return {"name": str(value["name"]), "size": size, "type": str(value.get("type") or "")}

    def validate(self, value):
        super().validate(value)
        if value is None:
            return
        try:
            validate_file(UploadInfo(**value), self.max_file_size, self.accepted_types)
        except (FileTooLarge, UnsupportedFileType) as exc:
            raise ValidationError(exc.message, code=exc.code)


def option_list(raw) -> list:
    if not isinstance(raw, (list, tuple)):
        return []
    return [str(o) for o in raw if o not in (None, "")]


def _positive_int(raw):
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def _text_attrs(definition) -> dict:
    return {"placeholder": definition.placeholder} if definition.placeholder else {}


def _text(definition, required):
    return forms.CharField(required=required, widget=forms.TextInput(attrs=_text_attrs(definition)))


def _textarea(definition, required):
    attrs = {"rows": 3, **_text_attrs(definition)}
    return forms.CharField(required=required, widget=forms.Textarea(attrs=attrs))


def _email(definition, required):
    return forms.EmailField(required=required, widget=forms.EmailInput(attrs=_text_attrs(definition)))


def _phone(definition, required):
    attrs = {"type": "tel", **_text_attrs(definition)}
    return forms.CharField(required=required, max_length=40, widget=forms.TextInput(attrs=attrs))


def _number(definition, required):
    return forms.FloatField(required=required, widget=forms.NumberInput(attrs=_text_attrs(definition)))


def _select(definition, required):
    blank = definition.placeholder or "Select an option..."
    choices = [("", blank)] + [(o, o) for o in option_list(definition.options)]
    return forms.ChoiceField(required=required, choices=choices)


def _radio(definition, required):
    choices = [(o, o) for o in option_list(definition.options)]
    return forms.ChoiceField(required=required, choices=choices, widget=forms.RadioSelect)


def _checkbox(definition, required):
    # BooleanField(required=True) rejects False, i.e. an unticked box
    return forms.BooleanField(required=required)


def _date(definition, required):
    return forms.DateField(required=required, widget=forms.DateInput(attrs={"type": "date"}))


def _file(definition, required):
    return FileMetadataField(
        required=required,
        max_file_size=_positive_int(definition.max_file_size),
        accepted_types=definition.accepted_types or None,
    )


FIELD_BUILDERS = {
    FieldType.TEXT: _text,
    FieldType.TEXTAREA: _textarea,
    FieldType.EMAIL: _email,
    FieldType.PHONE: _phone,
    FieldType.NUMBER: _number,
    FieldType.SELECT: _select,
    FieldType.RADIO: _radio,
    FieldType.CHECKBOX: _checkbox,
    FieldType.DATE: _date,
    FieldType.FILE: _file,
}

def build_field(definition) -> forms.Field:
    builder = FIELD_BUILDERS.get(definition.field_type, _text)
    field = builder(definition, bool(definition.is_required))
    field.label = definition.label
    return field


def generate_schema(fields, name="DynamicRegistrationForm"):
    """Build a Form class with one form field per definition, keyed by field id."""
    attrs = {definition.key: build_field(definition) for definition in fields}
    return type(name, (forms.Form,), attrs)


def _json_value(value):
    if isinstance(value, datetime.date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


# checkbox and file answers are not typed text and go to their fields as sent
_RAW_INPUT_TYPES = (FieldType.CHECKBOX, FieldType.FILE)


def _is_text_input(value) -> bool:
    return value is None or (isinstance(value, (str, int, float)) and not isinstance(value, bool))


def _text_input(value):
    """JSON numbers reach text-based fields as their string form."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


def bind_schema(fields, values):
    """Instantiate ``generate_schema(fields)`` bound to a flat value mapping."""
    schema = generate_schema(fields)
    data, files = {}, {}
    for definition in fields:
        value = values.get(definition.key)
        if definition.field_type == FieldType.FILE:
            files[definition.key] = value
        elif definition.field_type in _RAW_INPUT_TYPES:
            if definition.key in values:
                data[definition.key] = value
        elif definition.key in values and _is_text_input(value):
            data[definition.key] = _text_input(value)
    return schema(data=data, files=files)


def validate_responses(fields, responses) -> dict:
    """
    Validate a complete set of responses.

    Only fields visible for these responses are checked and returned, so a
    required field hidden by its rule never blocks a submission. Answers that
    are neither text nor a number (lists, objects, booleans) are refused for
    text-based fields. Raises ValidationFailed with messages keyed by field id.
    """
    responses = responses or {}
    visible = visible_fields(fields, responses)
    malformed = {
        f.key for f in visible
        if f.field_type not in _RAW_INPUT_TYPES and not _is_text_input(responses.get(f.key))
    }
    form = bind_schema(visible, responses)
    form.is_valid()
    errors = {}
    for f in visible:
        if f.key in malformed:
            errors[f.key] = ["Enter a valid value."]
        elif f.key in form.errors:
            errors[f.key] = [str(m) for m in form.errors[f.key]]
    if errors:
        labels = [f.label for f in visible if f.key in errors]
        raise ValidationFailed(f"Please correct: {', '.join(labels)}", errors=errors)
    return {key: _json_value(value) for key, value in form.cleaned_data.items()}
