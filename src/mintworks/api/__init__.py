"""Mintworks — FastAPI REST API layer.

This package contains the FastAPI application and the Pydantic request
models.  Route handlers only validate input and translate it into calls on
the core; all workflow rules live in :mod:`mintworks.core`.

Modules
-------
main
    FastAPI application factory, route handlers, error mapping and the
    ``main()`` CLI entry point.
models
    Pydantic models for API request validation.
"""
