"""HTTP surface for presentation-layer clients."""
