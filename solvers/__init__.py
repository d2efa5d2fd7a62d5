"""
Solvers package for the script runner.

Provides the CAPTCHA-solving adapter scripts reach through
``context.captcha``.

Submodules:
    capsolver: ``CapSolverClient`` -- async client for the CapSolver
        createTask/getTaskResult API (reCAPTCHA v2/v3, hCaptcha,
        Turnstile) with a fixed polling budget.
"""
