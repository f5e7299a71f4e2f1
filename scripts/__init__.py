"""Command line entry points for running PetSync outside the service."""
