"""Error taxonomy for the email rule engine."""

from enum import Enum


class ErrorKind(str, Enum):
    """Why a stage of email processing did not produce its normal result."""

    RESOLUTION_MISS = "resolution_miss"
    CONDITION_PARSE_ERROR = "condition_parse_error"
    TEMPLATE_RENDER_MISS = "template_render_miss"
    DELIVERY_TRANSIENT = "delivery_transient"
    DELIVERY_CONFIG = "delivery_config"
    BATCH_TIMEOUT = "batch_timeout"
    RULE_FETCH_TIMEOUT = "rule_fetch_timeout"
    RULE_ERROR = "rule_error"
    NO_RECIPIENT = "no_recipient"
    NO_TEMPLATE = "no_template"
    PROCESSING_ERROR = "processing_error"


class ConditionParseError(ValueError):
    """Rule conditions are not a list of condition objects."""


class DeliveryError(Exception):
    """Base error for outbound transports."""

    kind = ErrorKind.DELIVERY_TRANSIENT


class DeliveryConfigError(DeliveryError):
    """Transport is missing configuration or rejected it. Not retried."""

    kind = ErrorKind.DELIVERY_CONFIG


class DeliveryTransientError(DeliveryError):
    """Network, timeout or server-side failure. Retried."""

    kind = ErrorKind.DELIVERY_TRANSIENT
