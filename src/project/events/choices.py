# events/choices.py
from django.db import models


class FieldType(models.TextChoices):
    TEXT = "TEXT", "Text"
    TEXTAREA = "TEXTAREA", "Long text"
    EMAIL = "EMAIL", "Email"
    PHONE = "PHONE", "Phone"
    NUMBER = "NUMBER", "Number"
    SELECT = "SELECT", "Dropdown"
    CHECKBOX = "CHECKBOX", "Checkbox"
    RADIO = "RADIO", "Radio buttons"
    FILE = "FILE", "File upload"
    DATE = "DATE", "Date"


# SELECT and RADIO are the only types whose options mean anything
CHOICE_TYPES = (FieldType.SELECT, FieldType.RADIO)


class ConditionOperator(models.TextChoices):
    EQUALS = "equals", "Equals"
    NOT_EQUALS = "not_equals", "Does not equal"
    CONTAINS = "contains", "Contains"
    IS_CHECKED = "is_checked", "Is checked"


class RegistrationStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    CONFIRMED = "confirmed", "Confirmed"
    CANCELLED = "cancelled", "Cancelled"
