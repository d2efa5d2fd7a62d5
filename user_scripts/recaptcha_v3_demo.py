"""Solve a reCAPTCHA v3 challenge through CapSolver and report the token."""


def get_config():
    return {
        "id": "recaptcha_v3_demo",
        "name": "reCAPTCHA v3 Demo",
        "description": "Solve a reCAPTCHA v3 challenge with the configured CapSolver key",
        "version": "1.0.0",
        "author": "FourAir",
        "category": "Testing",
        "icon": "shield",
        "requires": {"wallets": False, "proxy": False},
        "config": {
            "site_url": {
                "type": "string",
                "label": "Page URL",
                "default": "https://www.google.com/recaptcha/api2/demo",
                "required": True,
            },
            "site_key": {"type": "string", "label": "Site key", "required": True},
            "page_action": {"type": "string", "label": "Page action", "default": "submit"},
            "use_proxy": {"type": "checkbox", "label": "Solve through the run's proxy", "default": False},
        },
        "timeoutMs": 300000,
    }


async def main(context):
    params = context.params
    proxy = context.proxy if params["use_proxy"] else None
    context.logger.info(f"Solving reCAPTCHA v3 for {params['site_url']}")
    token = await context.captcha.solve(
        params["site_url"],
        params["site_key"],
        proxy=proxy,
        page_action=params.get("page_action") or None,
    )
    context.logger.success(f"Token received ({len(token)} chars)")
    return {"success": True, "data": {"token": token}}
