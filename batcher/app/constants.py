"""Engine-level constants shared across modules."""
from __future__ import annotations

GOOGLE_CLASSROOM_BATCH_ENDPOINT_URL = "https://classroom.googleapis.com/batch"
GOOGLE_CLASSROOM_MAX_OPERATIONS_PER_BATCH = 50
GOOGLE_DRIVE_BATCH_ENDPOINT_URL = "https://www.googleapis.com/batch/drive/v3"
GOOGLE_DRIVE_MAX_OPERATIONS_PER_BATCH = 100

MULTIPART_MIXED = "multipart/mixed"
RESPONSE_CONTENT_ID_PREFIX = "response-"


class ERROR_STAGE:
    AUTH = "AUTH"
    ENCODE = "ENCODE"
    TRANSPORT = "TRANSPORT"
    FORMAT = "FORMAT"
    SUB_RESPONSE = "SUB_RESPONSE"
    ITEM = "ITEM"
    ORCHESTRATION = "ORCHESTRATION"
    CANCELLED = "CANCELLED"
    DEADLINE = "DEADLINE"
