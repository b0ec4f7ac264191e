# events/admin.py
from django.contrib import admin, messages

from .choices import RegistrationStatus
from .errors import CapacityExceeded
from .models import (
    Event, FormField, FormSubmission, Registration, RegistrationForm, SubmissionFile,
    delete_registration, update_registration_status,
)


@admin.register(Event)
class EventAdmin(admin.ModelAdmin):
    list_display = ("title", "start_at", "location", "max_attendees", "registered_count",
                    "is_published", "registration_closed")
    list_filter = ("is_published", "allow_registration", "registration_closed")
    search_fields = ("title", "slug", "location")
    prepopulated_fields = {"slug": ("title",)}
    readonly_fields = ("registered_count",)
    actions = ["close_registration", "open_registration"]

    @admin.action(description="Close registration")
    def close_registration(self, request, queryset):
        queryset.update(registration_closed=True)

    @admin.action(description="Open registration")
    def open_registration(self, request, queryset):
        queryset.update(registration_closed=False)


class FormFieldInline(admin.TabularInline):
    model = FormField
    extra = 0
    fields = ("order", "label", "field_type", "is_required", "step", "options", "conditional_logic")
    # steps and rules go through the form builder, which checks them
    readonly_fields = ("step", "conditional_logic")


@admin.register(RegistrationForm)
class RegistrationFormAdmin(admin.ModelAdmin):
    list_display = ("event", "is_active", "total_steps", "updated_at")
    list_filter = ("is_active",)
    search_fields = ("event__title",)
    inlines = [FormFieldInline]


class SubmissionFileInline(admin.TabularInline):
    model = SubmissionFile
    extra = 0
    readonly_fields = ("field_id", "file_name", "file_size", "mime_type", "file", "created_at")
    can_delete = False


@admin.register(FormSubmission)
class FormSubmissionAdmin(admin.ModelAdmin):
    list_display = ("event", "email", "created_at")
    list_filter = ("event",)
    search_fields = ("email", "event__title")
    readonly_fields = ("event", "form", "responses", "email", "created_at")
    inlines = [SubmissionFileInline]

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Registration)
class RegistrationAdmin(admin.ModelAdmin):
    list_display = ("full_name", "email", "event", "status", "created_at")
    list_filter = ("status", "event")
    search_fields = ("full_name", "email", "event__title")
    actions = ["confirm_selected", "cancel_selected"]

    def delete_model(self, request, obj):
        delete_registration(obj)

    def delete_queryset(self, request, queryset):
        for reg in queryset:
            delete_registration(reg)

    def _set_status(self, request, queryset, status):
        for reg in queryset:
            try:
                update_registration_status(reg, status)
            except CapacityExceeded as e:
                self.message_user(request, f"{reg}: {e.message}", level=messages.ERROR)

    @admin.action(description="Confirm selected registrations")
    def confirm_selected(self, request, queryset):
        self._set_status(request, queryset, RegistrationStatus.CONFIRMED)

    @admin.action(description="Cancel selected registrations")
    def cancel_selected(self, request, queryset):
        self._set_status(request, queryset, RegistrationStatus.CANCELLED)
