"""Application-wide constants for the nutrition portal."""

from __future__ import annotations

BRAND_NAME = "Vee Nutrition"

# Appointment types
APPOINTMENT_TYPE_INITIAL = "Initial"
APPOINTMENT_TYPE_FOLLOW_UP = "Follow-up"
APPOINTMENT_TYPES = (APPOINTMENT_TYPE_INITIAL, APPOINTMENT_TYPE_FOLLOW_UP)

# Service plans
PLAN_PAY_AS_YOU_GO = "pay-as-you-go"
PLAN_COMPLETE_PROGRAM = "complete-program"
SERVICE_PLANS = (PLAN_PAY_AS_YOU_GO, PLAN_COMPLETE_PROGRAM)

# Invoice number prefixes
INVOICE_PREFIX_SESSION = "INV"
INVOICE_PREFIX_SUBSCRIPTION = "SUB"
INVOICE_PREFIX_PENALTY = "PEN"
CREDIT_NOTE_PREFIX = "CN"

# Text constraints
MAX_REASON_LENGTH = 500
MAX_DESCRIPTION_LENGTH = 255

# Query limits
DEFAULT_QUERY_LIMIT = 100
MAIL_DISPATCH_BATCH_SIZE = 200

TIMESLOT_FORMAT = "%H:%M"

# Availability
DEFAULT_BOOKABLE_TIMESLOTS = ("09:00", "10:00", "11:00", "13:00", "14:00", "15:00", "16:00", "17:00")
DEFAULT_UNAVAILABLE_REASON = "Not available"
