"""SchoolGate — authorization decisions and audit trail for the school management platform."""

__version__ = "0.1.0"
