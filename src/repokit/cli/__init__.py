"""repokit command-line interface (``repokit``)."""
