"""HTTP routes for the CRM service."""
