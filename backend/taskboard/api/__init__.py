"""HTTP routes and dependencies for the task board API."""
