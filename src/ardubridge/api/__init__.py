"""HTTP helpers shared by the relay and bridge applications."""
