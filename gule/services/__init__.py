"""Domain services. Each service takes the request's SQLAlchemy session."""
