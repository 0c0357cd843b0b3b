"""Pure derivation of the DecisionSet from compiled config and a snapshot."""
