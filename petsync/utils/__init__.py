"""Helper utilities shared by the server and the device client."""
