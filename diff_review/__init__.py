"""Rule-driven review of git diffs through external analysis backends."""

__version__ = "0.3.0"
