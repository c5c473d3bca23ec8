"""Command execution channel into session containers."""

from tenantbox.execution.channel import ExecutionChannel, ExecutionHandle

__all__ = ["ExecutionChannel", "ExecutionHandle"]
