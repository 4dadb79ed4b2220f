"""
Constants
Centralised storage for stage names, stage outcomes and fixed markers.
"""
# Stage names
STAGE_PREPARE = "prepare"
STAGE_BUILD = "build"
STAGE_PUBLISH = "publish"
STAGE_DEPLOY = "deploy"
STAGE_CLEANUP = "cleanup"

# Stage outcomes
OUTCOME_OK = "ok"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"
OUTCOME_TIMED_OUT = "timed_out"
OUTCOME_DEGRADED = "degraded"
OUTCOME_ABORTED = "aborted"
FAILING_OUTCOMES = frozenset({OUTCOME_FAILED, OUTCOME_TIMED_OUT, OUTCOME_ABORTED})

# Revision fallback / branch default
LOCAL_MARKER = "local"

# Manifest placeholder replaced by the desired image reference
IMAGE_PLACEHOLDER = "__IMAGE_PLACEHOLDER__"
