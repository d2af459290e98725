"""Pure domain layer: value objects, clock, events and collaborator protocols."""
