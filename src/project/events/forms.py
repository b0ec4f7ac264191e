# events/forms.py
from django import forms

from .choices import CHOICE_TYPES, ConditionOperator, RegistrationStatus
from .models import FormField, RegistrationForm


class EventRegistrationForm(forms.Form):
    """The fixed form shown when an event has no active dynamic form."""
    full_name = forms.CharField(min_length=2, max_length=200)
    email = forms.EmailField()
    phone = forms.CharField(max_length=40, required=False)
    notes = forms.CharField(widget=forms.Textarea(attrs={"rows": 3}), required=False)


class FormFieldForm(forms.ModelForm):
    options = forms.CharField(
        required=False,
        widget=forms.Textarea(attrs={"rows": 4}),
        help_text="One option per line (dropdown and radio fields).",
    )
    depends_on = forms.ChoiceField(required=False, label="Show only when field")
    operator = forms.ChoiceField(required=False, choices=[("", "---------")] + ConditionOperator.choices)
    condition_value = forms.CharField(required=False, max_length=200, label="Value")

    class Meta:
        model = FormField
        fields = ["label", "placeholder", "field_type", "is_required", "step", "max_file_size", "accepted_types"]
        widgets = {
            "accepted_types": forms.TextInput(attrs={"placeholder": "image/*,application/pdf,.docx"}),
        }

    def __init__(self, *args, registration_form: RegistrationForm, **kwargs):
        super().__init__(*args, **kwargs)
        self.registration_form = registration_form
        # single hop: only fields without a rule of their own can be depended on
        others = registration_form.fields.exclude(pk=self.instance.pk).filter(conditional_logic__isnull=True)
        self.fields["depends_on"].choices = [("", "---------")] + [(str(f.pk), f.label) for f in others]
        if self.instance.pk:
            self.initial["options"] = "\n".join(self.instance.option_list)
            rule = self.instance.rule
            if rule:
                self.initial.update({
                    "depends_on": rule.depends_on,
                    "operator": rule.operator,
                    "condition_value": rule.value or "",
                })

    def clean_options(self):
        return [line.strip() for line in self.cleaned_data["options"].splitlines() if line.strip()]

    def clean_step(self):
        step = self.cleaned_data["step"]
        if step < 1:
            raise forms.ValidationError("Step must be at least 1.")
        if step > self.registration_form.total_steps:
            raise forms.ValidationError(
                f"This form has {self.registration_form.total_steps} step(s); raise the step count first."
            )
        return step

    def clean(self):
        cleaned = super().clean()
        field_type = cleaned.get("field_type")
        if field_type in CHOICE_TYPES and not cleaned.get("options"):
            self.add_error("options", "Add at least one option.")

        depends_on = cleaned.get("depends_on")
        operator = cleaned.get("operator")
        if bool(depends_on) != bool(operator):
            raise forms.ValidationError("Pick both a field and an operator for the condition, or neither.")
        if depends_on:
            if self.instance.pk and depends_on == str(self.instance.pk):
                self.add_error("depends_on", "A field cannot depend on itself.")
            elif self.instance.pk and self.registration_form.fields.filter(
                conditional_logic__dependsOnFieldId=str(self.instance.pk)
            ).exists():
                self.add_error("depends_on", "Other fields depend on this one, so it cannot have a condition.")
        return cleaned

    def field_data(self) -> dict:
        """Cleaned values in the shape the field store expects."""
        data = {name: self.cleaned_data.get(name) for name in self._meta.fields}
        data["options"] = self.cleaned_data.get("options") or []
        data["accepted_types"] = data.get("accepted_types") or ""
        depends_on = self.cleaned_data.get("depends_on")
        if depends_on:
            rule = {"dependsOnFieldId": depends_on, "operator": self.cleaned_data["operator"]}
            if self.cleaned_data["operator"] != ConditionOperator.IS_CHECKED:
                rule["value"] = self.cleaned_data.get("condition_value") or ""
            data["conditional_logic"] = rule
        else:
            data["conditional_logic"] = None
        return data


class RegistrationFormSettingsForm(forms.ModelForm):
    class Meta:
        model = RegistrationForm
        fields = ["is_active", "total_steps"]

    def clean_total_steps(self):
        total = self.cleaned_data["total_steps"]
        if total < 1:
            raise forms.ValidationError("A form needs at least one step.")
        if self.instance.pk and total < self.instance.max_step:
            raise forms.ValidationError(f"Some fields are on step {self.instance.max_step}; move them first.")
        return total


class ReorderForm(forms.Form):
    direction = forms.ChoiceField(choices=[("up", "Up"), ("down", "Down")])


class RegistrationStatusForm(forms.Form):
    status = forms.ChoiceField(choices=RegistrationStatus.choices)