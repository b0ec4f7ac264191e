import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Event",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("title", models.CharField(max_length=200)),
                ("slug", models.SlugField(max_length=200, unique=True)),
                ("description", models.TextField(blank=True)),
                ("location", models.CharField(blank=True, max_length=200)),
                ("start_at", models.DateTimeField()),
                ("end_at", models.DateTimeField(blank=True, null=True)),
                ("max_attendees", models.PositiveIntegerField(blank=True, null=True)),
                ("registered_count", models.PositiveIntegerField(default=0)),
                ("is_published", models.BooleanField(default=False)),
                ("allow_registration", models.BooleanField(default=True)),
                ("registration_closed", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["start_at"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("end_at__isnull", True), ("end_at__gt", models.F("start_at")), _connector="OR"),
                        name="event_time_valid",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="RegistrationForm",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("is_active", models.BooleanField(default=False)),
                ("total_steps", models.PositiveSmallIntegerField(default=1)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("event", models.OneToOneField(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name="registration_form",
                    to="events.event",
                )),
            ],
            options={
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("total_steps__gte", 1)), name="form_total_steps_min"),
                ],
            },
        ),
        migrations.CreateModel(
            name="FormField",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("label", models.CharField(max_length=200)),
                ("placeholder", models.CharField(blank=True, max_length=200)),
                ("field_type", models.CharField(
                    choices=[
                        ("TEXT", "Text"), ("TEXTAREA", "Long text"), ("EMAIL", "Email"), ("PHONE", "Phone"),
                        ("NUMBER", "Number"), ("SELECT", "Dropdown"), ("CHECKBOX", "Checkbox"),
                        ("RADIO", "Radio buttons"), ("FILE", "File upload"), ("DATE", "Date"),
                    ],
                    default="TEXT",
                    max_length=16,
                )),
                ("options", models.JSONField(blank=True, null=True)),
                ("is_required", models.BooleanField(default=False)),
                ("order", models.IntegerField(default=0)),
                ("step", models.PositiveSmallIntegerField(default=1)),
                ("conditional_logic", models.JSONField(blank=True, null=True)),
                ("max_file_size", models.PositiveIntegerField(blank=True, null=True)),
                ("accepted_types", models.CharField(blank=True, max_length=255)),
                ("form", models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name="fields",
                    to="events.registrationform",
                )),
            ],
            options={
                "ordering": ["order", "id"],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("step__gte", 1)), name="field_step_min"),
                ],
            },
        ),
        migrations.CreateModel(
            name="FormSubmission",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("responses", models.JSONField(default=dict)),
                ("email", models.EmailField(blank=True, max_length=254, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("event", models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name="submissions",
                    to="events.event",
                )),
                ("form", models.ForeignKey(
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name="submissions",
                    to="events.registrationform",
                )),
            ],
            options={
                "ordering": ["created_at", "id"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("email__isnull", False)),
                        fields=("event", "email"),
                        name="uniq_submission_event_email",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="SubmissionFile",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("field_id", models.CharField(max_length=64)),
                ("file_name", models.CharField(max_length=255)),
                ("file_size", models.PositiveIntegerField()),
                ("mime_type", models.CharField(max_length=100)),
                ("file", models.FileField(upload_to="registrations/%Y/%m/")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("submission", models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name="files",
                    to="events.formsubmission",
                )),
            ],
        ),
        migrations.CreateModel(
            name="Registration",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("full_name", models.CharField(max_length=200)),
                ("email", models.EmailField(max_length=254)),
                ("phone", models.CharField(blank=True, max_length=40)),
                ("notes", models.TextField(blank=True)),
                ("status", models.CharField(
                    choices=[("pending", "Pending"), ("confirmed", "Confirmed"), ("cancelled", "Cancelled")],
                    default="pending",
                    max_length=12,
                )),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("event", models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name="registrations",
                    to="events.event",
                )),
            ],
            options={
                "ordering": ["-created_at"],
                "constraints": [
                    models.UniqueConstraint(fields=("event", "email"), name="uniq_registration_event_email"),
                ],
            },
        ),
    ]
