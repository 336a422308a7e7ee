"""Declarative Deployment Orchestrator (DDO).

Reads a manifest of services and custom-domain bindings, observes the
deployed state on each provider, and applies the minimal set of
operations to converge:
 - DNS records on the registrar
 - container/site deployments on hosting providers
 - domain bindings, load-balancer host routes and TLS certificates

Independent branches of the plan run in parallel; one failing branch
does not stop the others.
"""
