"""
flux-converge is a declarative convergence engine for cluster resources.

A managed object declares a set of desired resources. Its controller applies
them to a cluster store, tracks the applied set in an inventory, garbage
collects resources that fall out of it and reports progress through the
`Ready`, `Reconciling` and `Stalled` conditions.
"""

__all__ = [
    "annotations",
    "apply",
    "artifact",
    "builder",
    "conditions",
    "controller",
    "exceptions",
    "inventory",
    "manifest",
    "store",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
