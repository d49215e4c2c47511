"""Configuration management using Pydantic settings loaded from YAML."""
