"""Query the native balance of each wallet over JSON-RPC and post a report."""

from datetime import datetime, timezone
from decimal import Decimal

WEI_PER_ETHER = Decimal(10) ** 18


def get_config():
    return {
        "id": "wallet_balance_check",
        "name": "Wallet Balance Check",
        "description": "Query wallet balances through an RPC node and POST the results",
        "version": "1.1.0",
        "author": "FourAir",
        "category": "Wallet",
        "icon": "wallet",
        "requires": {"wallets": True, "proxy": False},
        "platforms": ["ETH", "Arbitrum", "Optimism"],
        "config": {
            "rpc_url": {
                "type": "string",
                "label": "RPC URL",
                "default": "https://ethereum-rpc.publicnode.com",
                "required": True,
            },
            "post_url": {
                "type": "string",
                "label": "Report URL (leave empty to skip)",
                "default": "https://httpbin.org/post",
            },
        },
    }


async def get_balance(context, rpc_url, address):
    resp = await context.http.post(rpc_url, {
        "jsonrpc": "2.0",
        "method": "eth_getBalance",
        "params": [address, "latest"],
        "id": 1,
    })
    if not resp.ok:
        raise RuntimeError(f"RPC returned HTTP {resp.status}")
    body = resp.data if isinstance(resp.data, dict) else {}
    if "error" in body:
        raise RuntimeError(body["error"].get("message", "RPC error"))
    return Decimal(int(body["result"], 16)) / WEI_PER_ETHER


async def main(context):
    params = context.params
    wallets = context.wallets
    log = context.logger
    log.info(f"Checking {len(wallets)} wallet(s) via {params['rpc_url']}")

    results = []
    for index, wallet in enumerate(wallets, start=1):
        if context.should_stop():
            log.warn("Stop requested, skipping remaining wallets")
            break
        try:
            balance = await get_balance(context, params["rpc_url"], wallet.address)
            log.success(f"{wallet.address}: {balance} ETH")
            entry = {"address": wallet.address, "balance": str(balance)}
            context.result.success(entry)
        except Exception as e:
            log.error(f"{wallet.address}: {e}")
            entry = {"address": wallet.address, "error": str(e)}
            context.result.error(f"{wallet.address}: {e}")
        results.append(entry)
        context.progress.update(index, len(wallets), wallet.address)

    if params.get("post_url"):
        report = {
            "wallets": results,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "client": "FourAir",
        }
        resp = await context.http.post(params["post_url"], report)
        log.info(f"Report sent, HTTP {resp.status}")

    context.progress.complete()
    failed = [r for r in results if "error" in r]
    return {
        "success": not failed,
        "data": {"checked": len(results), "failed": len(failed), "wallets": results},
    }
