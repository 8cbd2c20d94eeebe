"""Education CRM sync service: Excel workbook over Microsoft Graph."""

__version__ = "0.1.0"
