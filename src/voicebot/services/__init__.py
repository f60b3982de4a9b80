"""Device, speech synthesis and recognition services."""
