"""Master data blueprint package (companies, suppliers, materials)."""

from .routes import masterdata_bp  # noqa: F401
