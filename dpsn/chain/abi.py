"""ABI of the TopicRegistry contract, restricted to the entries the client calls."""

TOPIC_REGISTRY_ABI = [
    {
        "inputs": [],
        "name": "getTopicPrice",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "user", "type": "address"}],
        "name": "getUserTopics",
        "outputs": [
            {
                "components": [
                    {"internalType": "string", "name": "name", "type": "string"},
                    {"internalType": "bytes32", "name": "topicHash", "type": "bytes32"},
                    {"internalType": "uint256", "name": "createdAt", "type": "uint256"},
                ],
                "internalType": "struct TopicRegistery.PubSubTopic[]",
                "name": "",
                "type": "tuple[]",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "string", "name": "topicName", "type": "string"},
            {"internalType": "bytes32", "name": "topicHash", "type": "bytes32"},
            {"internalType": "bytes", "name": "signature", "type": "bytes"},
        ],
        "name": "registerTopic",
        "outputs": [],
        "stateMutability": "payable",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "owner",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
]
