"""HTTP surface for the doctools engine."""
