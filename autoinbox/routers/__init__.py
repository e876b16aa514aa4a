"""HTTP routers for the webhook ingress and employee APIs."""
