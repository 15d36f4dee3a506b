"""Per-run step locks via cache so a duplicated import task never runs two steps at once."""
from django.core.cache import cache

IMPORT_STEP_LOCK_KEY = "mail:import_step_lock:{import_id}"
IMPORT_STEP_LOCK_TIMEOUT = 900  # 15 minutes; clears if worker dies mid-page


def acquire_import_lock(import_id: int, timeout_seconds: int = IMPORT_STEP_LOCK_TIMEOUT) -> bool:
    """
    Acquire the step lock for one EmailImport.
    Returns True if lock acquired; False if another worker already holds it.
    """
    return bool(
        cache.add(
            IMPORT_STEP_LOCK_KEY.format(import_id=import_id),
            "1",
            timeout=timeout_seconds,
        )
    )


def release_import_lock(import_id: int) -> None:
    cache.delete(IMPORT_STEP_LOCK_KEY.format(import_id=import_id))
