"""Click command modules registered by ``faultline.cli``."""
