"""
Core bot logic: the token-chain engine, the model store and its persistence,
the response policy and the message router.
"""
