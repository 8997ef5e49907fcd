"""HTTP routers for the decision API."""
