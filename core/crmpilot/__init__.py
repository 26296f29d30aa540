"""CRM Pilot - conversational intent resolution over a CRM."""

__version__ = "0.1.0"
