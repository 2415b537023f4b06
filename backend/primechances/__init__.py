"""PrimeChances opportunity lifecycle backend."""
