from famtracker.locations.service import LocationQueryService

__all__ = ["LocationQueryService"]
