"""Planning and apply engine for declarative resource provisioning.

Resolves declarations into instances, orders them by their references,
diffs them against recorded state and applies the resulting changes
through a ResourceProvider.
"""
