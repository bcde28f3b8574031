"""Background workers for hairsim backend."""
