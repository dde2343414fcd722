"""HTTP API support: dependency providers for the routers."""
