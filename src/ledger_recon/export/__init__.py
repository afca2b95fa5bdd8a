"""Export to the system of record."""

from .gateway import PushGateway, PushPassResult

__all__ = ["PushGateway", "PushPassResult"]
