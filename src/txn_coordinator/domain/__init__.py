"""Domain layer - coordination entities, value objects and services."""
