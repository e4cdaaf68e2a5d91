"""
__init__.py
-----------
US Core Conformance Engine — SMART standalone launch package
-------------------------------------------------------------
Exposes the LangGraph launch state machine: start_launch parks a session
in wait for the browser redirect, resume_launch / resume_by_state run the
token exchange nodes once the callback arrives.

Project: US Core Conformance Engine
"""

from launch.workflow import (
    LaunchStateError,
    UnknownLaunchStateError,
    context_from_session,
    resume_by_state,
    resume_launch,
    start_launch,
)

__all__ = [
    "LaunchStateError",
    "UnknownLaunchStateError",
    "context_from_session",
    "resume_by_state",
    "resume_launch",
    "start_launch",
]
