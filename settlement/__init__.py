"""Promoter settlement service.

Collects engagement metrics from social platforms, scores them for bot
activity, settles legitimate views into daily payouts and pays them out.
"""

__all__: list[str] = []
