"""Common type aliases for the Rapport backend API."""
from typing import Any

# Persisted documents (camelCase JSON as stored on disk)
SubmissionDoc = dict[str, Any]
IndexEntry = dict[str, Any]
LockMeta = dict[str, Any]
CostObjectRow = dict[str, Any]

# List aliases
IndexEntryList = list[IndexEntry]
