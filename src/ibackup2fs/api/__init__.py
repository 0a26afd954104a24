"""HTTP control surface for extraction runs."""
