"""
Errors surfaced by the analytics service.

Routes map ``AnalyticsAccessDenied`` to 403 and ``AnalyticsNotFound`` to 404.
Nothing partially computed is ever attached to these.
"""


class AnalyticsError(Exception):
    pass


class AnalyticsAccessDenied(AnalyticsError):
    pass


class AnalyticsNotFound(AnalyticsError):
    pass
