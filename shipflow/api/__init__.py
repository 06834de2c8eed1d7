"""FastAPI application exposing the EasyPost webhook endpoint."""
