"""PromoDesk: promoter group payroll dashboard."""

__version__ = "0.1.0"
