"""ServiceHub: health dashboard for Spring Boot Actuator services."""

__version__ = "0.1.0"
