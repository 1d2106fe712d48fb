"""HTTP surface: submission form, item pages, and the status fragment endpoint."""
