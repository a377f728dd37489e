"""Package source classification and display helpers."""

from extmgr.marketplace.source_utils import (
    classify_source,
    normalize_for_install,
    normalize_source,
    split_registry_spec,
    split_vcs_repo_and_ref,
)

__all__ = [
    "classify_source",
    "normalize_for_install",
    "normalize_source",
    "split_registry_spec",
    "split_vcs_repo_and_ref",
]
