"""Human review of match suggestions."""

from .lifecycle import SuggestionLifecycle

__all__ = ["SuggestionLifecycle"]
