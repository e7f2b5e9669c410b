"""Reconciliation core: identifiers, dates, mappings and the reconciler."""
