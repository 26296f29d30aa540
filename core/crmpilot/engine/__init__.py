"""Engine module - intent classification, routing and orchestration."""
