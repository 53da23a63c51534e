"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in portal/__init__.py with no default limits;
this module applies granular limits per route category.

Usage:
    from portal.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WORKFLOW_LIMIT = "120/minute"
ADMIN_LIMIT = "30/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Workflow endpoints:   120/minute (client portal polling + actions)
        - Scheduler endpoints:  30/minute  (manual job triggers)
        - Health check:         exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name in ("workflow", "notification_bp"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WORKFLOW_LIMIT)(bp)

    bp = app.blueprints.get("scheduler_bp")
    if bp:
        limiter.limit(ADMIN_LIMIT)(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — workflow: %s, scheduler: %s", WORKFLOW_LIMIT, ADMIN_LIMIT,
    )
