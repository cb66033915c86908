"""Admission control for automated messaging accounts.

This package fronts a messaging account driven by a browser-automation
client with a protective dispatch layer. Features include:

- Priority-ordered per-account queues with round-robin fairness
- Sliding-window rate limiting with burst allowance
- Automatic retry with exponential backoff and jitter
- A multi-factor account health score with a warm-up ramp
- A safety gate that holds messages while an account is at risk
- FastAPI REST API for control and monitoring, Prometheus metrics

Example:
    Basic usage with the FastAPI application::

        from send_guard.core import DispatchCore
        from send_guard.api import create_app

        core = DispatchCore(client=my_account_client)
        app = create_app(core, api_token="secret")
"""

__version__ = "0.3.0"
