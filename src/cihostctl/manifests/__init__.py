"""Manifests shipped with cihostctl."""
