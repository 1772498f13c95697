"""Docker Swarm service state collection, health transition tracking and alerting."""

__version__ = "0.1.0"