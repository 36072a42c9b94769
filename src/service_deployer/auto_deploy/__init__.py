"""Auto-deploy pipeline: revision check, build, session stop, rotation, restart."""
