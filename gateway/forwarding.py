"""
Default downstream handler: forwards allowed requests to the resource store.

Reads go through the versioning coordinator so `_history/{vid}` and `_versionId`
selectors resolve consistently. History interactions (`_history` without a
version) are forwarded as history. Everything else passes through with the
upstream status and body unchanged.
"""

import logging

from gateway.errors import operation_outcome

logger = logging.getLogger(__name__)

# Gateway-only parameters that never reach the upstream server
_GATEWAY_PARAMS = ('_versionId',)


class ForwardingHandler:

    def __init__(self, store, versioning, domain='fhir'):
        self.store = store
        self.versioning = versioning
        self.domain = domain

    def __call__(self, ctx):
        locator = ctx.locator
        method = ctx.method

        if locator is None or locator.operation:
            return self.store.forward(method, self.upstream_path(ctx.path),
                                      params=self._params(ctx), body=ctx.payload)

        if locator.history:
            if method in ('GET', 'HEAD'):
                return self.store.forward('GET', self.upstream_path(ctx.path),
                                          params=self._params(ctx))
            return 405, operation_outcome(
                'not-supported', f'{method} is not supported on {locator.reference}/_history')

        if method in ('GET', 'HEAD'):
            if locator.has_resource_id:
                return 200, self.versioning.read(self.store, locator, ctx.version_id)
            return self.store.forward('GET', f'/{locator.resource_type}',
                                      params=self._params(ctx))

        if method in ('POST', 'PUT', 'PATCH') and not isinstance(ctx.payload, dict):
            return 400, operation_outcome('invalid', 'Request body must be a JSON resource')

        if method == 'POST':
            return self.store.create(locator.resource_type, ctx.payload)
        if method == 'PUT' and locator.has_resource_id:
            return self.store.update(locator.resource_type, locator.resource_id, ctx.payload,
                                     if_match=ctx.headers.get('If-Match'))
        if method == 'DELETE' and locator.has_resource_id:
            return self.store.delete(locator.resource_type, locator.resource_id)
        if method == 'PATCH' and locator.has_resource_id:
            return self.store.forward('PATCH', f'/{locator.reference}', body=ctx.payload)

        logger.info(f'Unsupported interaction {method} {locator!r}')
        return 405, operation_outcome('not-supported',
                                      f'{method} is not supported on {locator.reference}')

    def upstream_path(self, path):
        """Strip everything up to and including the `{domain}` segment."""
        segments = [s for s in (path or '').split('/') if s]
        if self.domain in segments:
            segments = segments[segments.index(self.domain) + 1:]
        return '/' + '/'.join(segments)

    @staticmethod
    def _params(ctx):
        return {name: values for name, values in ctx.query_params.items()
                if name not in _GATEWAY_PARAMS}
