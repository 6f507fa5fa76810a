"""Shared defaults for flowgate."""

DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_JOB_TIMEOUT = 900.0
DEFAULT_HTTP_TIMEOUT = 10.0
DEFAULT_N8N_TIMEOUT = 20.0

N8N_MAX_PAGE_SIZE = 250
HISTORY_PAGE_SIZE = 20
HISTORY_WINDOW_DAYS = 7

DEFAULT_WORKFLOW_PARAM = "WORKFLOW_ID"
DEFAULT_CRED_IDS_PARAM = "CRED_IDS"

INPUT_ACTION_CLASS_MARKER = "InputAction"
PAUSED_PENDING_INPUT = "PAUSED_PENDING_INPUT"
DEFAULT_APPROVAL_STAGE = "Approval"

# Stage labels used in step sequences and ledger metadata
STAGE_PROMOTE_CREDS = "PROMOTE_CREDS"
STAGE_DEV_TO_GIT = "DEV_TO_GIT"
STAGE_DEPLOY_FROM_GIT = "DEPLOY_FROM_GIT"

# Ledger action names
ACTION_PROMOTE_CREDENTIALS = "PROMOTE_CREDENTIALS"
ACTION_PUSH_TO_GIT = "PUSH_TO_GIT"
ACTION_DEPLOY_FROM_GIT = "DEPLOY_FROM_GIT"
ACTION_PUSH_TO_PROD = "PUSH_TO_PROD"
ACTION_PULL_FROM_GIT = "PULL_FROM_GIT"
