from utils.lifecycle.cleanup import CleanupCoordinator

__all__ = ['CleanupCoordinator']
