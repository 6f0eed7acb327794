"""Volume management: mount backends and the volume service."""
