"""
Deed Workflow Service — Collaborator Hooks

External collaborators (notification sender, document generator) subscribe
to two events:

    on_approved(form, stage_key)   after any stage approval is committed
    on_locked(form)                after staff5 locks the form

Hooks run after the transaction commits, never inside it.  A failing hook
is logged and does not undo the transition.

Usage:
    from deedflow.services import workflow_hooks

    @workflow_hooks.on_locked
    def queue_document(form):
        ...
"""

import logging

logger = logging.getLogger(__name__)

_approved_hooks = []
_locked_hooks = []


def on_approved(fn):
    """Register ``fn(form, stage_key)``; usable as a decorator."""
    _approved_hooks.append(fn)
    return fn


def on_locked(fn):
    """Register ``fn(form)``; usable as a decorator."""
    _locked_hooks.append(fn)
    return fn


def clear_hooks():
    _approved_hooks.clear()
    _locked_hooks.clear()


def _run(hook, *args, form_id, stage):
    try:
        hook(*args)
    except Exception:
        logger.exception(
            "Workflow hook %s failed",
            getattr(hook, "__name__", repr(hook)),
            extra={"form_id": form_id, "stage": stage},
        )


def fire_approved(form, stage_key):
    for hook in list(_approved_hooks):
        _run(hook, form, stage_key, form_id=form.id, stage=stage_key)


def fire_locked(form):
    for hook in list(_locked_hooks):
        _run(hook, form, form_id=form.id, stage="staff5")
