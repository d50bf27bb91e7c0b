"""HTTP boundary: routes and error translation."""
