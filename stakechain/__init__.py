# StakeChain: stake/reward hash-chain ledgers and claim verification
__version__ = "0.1.0"
