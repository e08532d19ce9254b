"""HTTP surface and SQL persistence for outbound emission."""
