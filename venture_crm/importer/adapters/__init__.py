"""Importer adapters for external CRM providers."""
