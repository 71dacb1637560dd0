from .jobs import TickCoordinator

__all__ = ["TickCoordinator"]
