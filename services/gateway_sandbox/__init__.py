"""Payment provider sandbox: a Razorpay-compatible stand-in for local runs."""
