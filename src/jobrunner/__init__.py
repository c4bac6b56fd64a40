"""jobrunner: durable background job queue and worker pool."""

__version__ = "0.1.0"
