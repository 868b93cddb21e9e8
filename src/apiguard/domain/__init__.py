"""Domain layer: exceptions, value objects, entities and pure services."""
