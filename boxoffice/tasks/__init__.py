"""
Celery background tasks for the Boxoffice booking engine.
"""
