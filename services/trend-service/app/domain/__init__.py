"""Domain layer: entities, periods and the error taxonomy."""
