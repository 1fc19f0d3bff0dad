"""
Grievance Portal Authentication Core

Server:
    main          FastAPI application factory (create_app)
    auth          Login/registration endpoints, token verification, user directories

Client:
    client        Session manager, session stores, token codec and the
                  authenticated request pipeline

Shared:
    provider      Identity provider (GoTrue) adapter
    models        Pydantic models for principals, tokens and wire bodies
    errors        Server error codes and client session errors
    config        Environment-backed settings
"""

__version__ = "1.0.0"
