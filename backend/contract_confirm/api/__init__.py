"""HTTP routers and request plumbing."""
