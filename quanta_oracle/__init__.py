"""QUANTA price aggregation engine and on-chain oracle updater."""
