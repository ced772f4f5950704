"""meterd daemon: ledger core, storage backends, runtime sweeps and HTTP app."""
