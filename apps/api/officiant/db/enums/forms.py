"""Form-related enums."""

from enum import Enum


class FormType(str, Enum):
    """Kind of record a submission creates besides the lead."""

    INQUIRY = "inquiry"
    BOOKING = "booking"


class FieldMappingType(str, Enum):
    """Semantic mapping attached to a form field."""

    EMAIL = "email"
    PHONE = "phone"
    NAME = "name"
    FIRST_NAME = "firstName"
    LAST_NAME = "lastName"
    DATE = "date"
    LOCATION = "location"
    CUSTOM = "custom"


class SubmissionStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
