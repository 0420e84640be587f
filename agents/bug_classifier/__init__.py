"""Bug Classifier – regex parsing of test output into failure locations."""

from agents.bug_classifier.error_classifier import classify_error, parse_errors

__all__ = ["classify_error", "parse_errors"]
