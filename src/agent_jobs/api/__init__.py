"""HTTP surface: job routes and server-sent event streaming."""
