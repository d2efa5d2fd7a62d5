"""Sign a message with every selected wallet (EIP-191 personal_sign)."""

def get_config():
    return {
        "id": "sign_message",
        "name": "Sign Message",
        "description": "Sign a text message with each wallet's private key",
        "version": "1.0.0",
        "author": "FourAir",
        "category": "Wallet",
        "icon": "signature",
        "requires": {"wallets": True, "proxy": False},
        "requiredModules": ["eth_account"],
        "config": {
            "message": {"type": "text", "label": "Message", "default": "Hello from FourAir", "required": True},
            "shuffle": {"type": "boolean", "label": "Randomise wallet order", "default": False},
        },
    }


async def main(context):
    eth = context.require("eth_account")
    messages = context.require("eth_account.messages")
    wallets = context.wallets
    if context.params["shuffle"]:
        wallets = context.utils.shuffle(wallets)

    signable = messages.encode_defunct(text=context.params["message"])
    signatures = []
    for wallet in wallets:
        if not wallet.private_key:
            context.logger.warn(f"{wallet.address}: no private key, skipped")
            continue
        signed = eth.Account.sign_message(signable, private_key=wallet.private_key)
        signature = "0x" + signed.signature.hex().removeprefix("0x")
        context.logger.success(f"{wallet.address}: signed")
        signatures.append({"address": wallet.address, "signature": signature})

    return {"success": bool(signatures), "data": {"signatures": signatures}}
