"""Live trade feed relay: one upstream subscription, a price cache, one downstream sink."""
