"""Blueprint packages: auth, orders, masterdata, reports."""
