"""Engine events and the fan-out bus that carries them."""
