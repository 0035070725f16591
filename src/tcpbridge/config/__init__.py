"""
Configuration loaded from configobj files, validated against a schema.
"""
