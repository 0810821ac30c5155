def _fn(name, inputs, outputs=(), mutability="nonpayable"):
    return {
        "inputs": [{"internalType": t, "name": n, "type": t} for n, t in inputs],
        "name": name,
        "outputs": [{"internalType": t, "name": n, "type": t} for n, t in outputs],
        "stateMutability": mutability,
        "type": "function",
    }


ERC20_ABI = [
    _fn("decimals", [], [("", "uint8")], "view"),
    _fn("balanceOf", [("account", "address")], [("", "uint256")], "view"),
    _fn("allowance", [("owner", "address"), ("spender", "address")], [("", "uint256")], "view"),
    _fn("approve", [("spender", "address"), ("value", "uint256")], [("", "bool")]),
]

# Platform tokens are ERC20s that also sell and buy themselves against the funding asset.
TRADABLE_TOKEN_ABI = ERC20_ABI + [
    _fn("buy", [("tokenAmount", "uint256"), ("cost", "uint256")]),
    _fn("sell", [("tokenAmount", "uint256"), ("expectedRevenue", "uint256")]),
]

ESCROW_ABI = [
    _fn("fundActor", [("token_", "address"), ("amount_", "uint256")]),
]
