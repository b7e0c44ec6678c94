"""
Business logic services for the Boxoffice booking engine.
"""
