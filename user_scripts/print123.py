"""Print "123" a configurable number of times (legacy METADATA/execute form)."""

METADATA = {
    "id": "print123",
    "name": "Print 123",
    "description": "Minimal test script that prints 123 in a loop",
    "version": "1.0.0",
    "author": "FourAir",
    "category": "Testing",
    "icon": "code",
    "requires": {"wallets": False, "proxy": False},
    "platforms": [],
    "config": {
        "delay": {"type": "number", "label": "Delay (seconds)", "default": 2, "min": 0, "max": 10},
        "count": {"type": "number", "label": "Iterations", "default": 3, "min": 1, "max": 10},
    },
}


async def execute(wallets, config, utils):
    logger = utils.logger
    delay = config["delay"]
    count = config["count"]
    logger.info(f"Printing 123 {count} time(s) with a {delay}s delay")

    for i in range(1, count + 1):
        logger.info(f"Print #{i}: 123")
        if i < count:
            await utils.sleep(delay)

    logger.success("Done")
    return {"success": True, "data": {"count": count}}
