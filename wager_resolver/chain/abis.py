"""
Contract ABIs consumed by the resolver (read/write interface only).
"""

WAGER_FACTORY_ABI = [
    {
        "inputs": [],
        "name": "getTotalWagers",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "name": "allWagers",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function"
    }
]

WAGER_ABI = [
    {
        "inputs": [],
        "name": "getWagerData",
        "outputs": [
            {
                "components": [
                    {"internalType": "address", "name": "creator", "type": "address"},
                    {"internalType": "address", "name": "opponent", "type": "address"},
                    {"internalType": "address", "name": "token", "type": "address"},
                    {"internalType": "uint256", "name": "amount", "type": "uint256"},
                    {"internalType": "string", "name": "creatorChessUsername", "type": "string"},
                    {"internalType": "string", "name": "opponentChessUsername", "type": "string"},
                    {"internalType": "string", "name": "gameId", "type": "string"},
                    {"internalType": "uint8", "name": "state", "type": "uint8"},
                    {"internalType": "address", "name": "winner", "type": "address"},
                    {"internalType": "uint256", "name": "createdAt", "type": "uint256"},
                    {"internalType": "uint256", "name": "fundedAt", "type": "uint256"},
                    {"internalType": "uint256", "name": "expiresAt", "type": "uint256"},
                    {"internalType": "uint256", "name": "settledAt", "type": "uint256"},
                    {"internalType": "bool", "name": "creatorDeposited", "type": "bool"},
                    {"internalType": "bool", "name": "opponentDeposited", "type": "bool"},
                    {"internalType": "uint256", "name": "platformFee", "type": "uint256"}
                ],
                "internalType": "struct Wager.WagerData",
                "name": "",
                "type": "tuple"
            }
        ],
        "stateMutability": "view",
        "type": "function"
    }
]

RECLAIM_VERIFIER_ABI = [
    {
        "inputs": [
            {"internalType": "bytes", "name": "encodedProof", "type": "bytes"},
            {"internalType": "address", "name": "wagerContract", "type": "address"},
            {"internalType": "address", "name": "whitePlayerAddress", "type": "address"},
            {"internalType": "address", "name": "blackPlayerAddress", "type": "address"}
        ],
        "name": "verifyChessGameProof",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    },
    {
        "inputs": [
            {"internalType": "bytes", "name": "encodedProof", "type": "bytes"},
            {"internalType": "address", "name": "whitePlayerAddress", "type": "address"},
            {"internalType": "address", "name": "blackPlayerAddress", "type": "address"}
        ],
        "name": "validateProof",
        "outputs": [
            {"internalType": "bool", "name": "isValid", "type": "bool"},
            {
                "components": [
                    {"internalType": "string", "name": "gameId", "type": "string"},
                    {"internalType": "address", "name": "winner", "type": "address"},
                    {"internalType": "string", "name": "result", "type": "string"},
                    {"internalType": "uint256", "name": "timestamp", "type": "uint256"}
                ],
                "internalType": "struct ReclaimVerifier.GameData",
                "name": "gameData",
                "type": "tuple"
            }
        ],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "address", "name": "wager", "type": "address"},
            {"indexed": True, "internalType": "address", "name": "winner", "type": "address"},
            {"indexed": False, "internalType": "string", "name": "gameId", "type": "string"},
            {"indexed": False, "internalType": "bytes32", "name": "proofHash", "type": "bytes32"}
        ],
        "name": "ProofVerified",
        "type": "event"
    }
]

# ABI type of the proof struct passed as encodedProof
ENCODED_PROOF_TYPE = "(string,string,uint256,bytes32,bytes32)"
