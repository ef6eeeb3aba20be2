"""Fields derived from the reconciled graph: sort indexes and testnet flags."""

import logging
from collections import defaultdict
from typing import TYPE_CHECKING, Dict, List, Sequence, Union

from chaindata.models import Chain, EvmNetwork, TokenBase, token_anchor

if TYPE_CHECKING:
    from chaindata.pipeline import PipelineContext

logger = logging.getLogger(__name__)

# Relay chains listed first, in this order
RELAY_PRIORITY = {"polkadot": 0, "kusama": 1}


def _name_key(entity: Union[Chain, EvmNetwork]) -> str:
    return (entity.name or entity.id).lower()


def sort_chains_and_networks(
    chains: Sequence[Chain], evm_networks: Sequence[EvmNetwork]
) -> List[Union[Chain, EvmNetwork]]:
    """
    Order chains and evm networks for display.

    Mainnets before testnets; polkadot and kusama lead, each followed by
    its parachains; every chain is followed by its linked evm networks;
    standalone evm networks come last.
    """
    chain_ids = {chain.id for chain in chains}
    parachains: Dict[str, List[Chain]] = defaultdict(list)
    linked: Dict[str, List[EvmNetwork]] = defaultdict(list)
    for chain in chains:
        if chain.relay_id in chain_ids:
            parachains[chain.relay_id].append(chain)
    for network in evm_networks:
        if network.substrate_chain_id in chain_ids:
            linked[network.substrate_chain_id].append(network)

    ordered: List[Union[Chain, EvmNetwork]] = []

    def add_chain(chain: Chain):
        ordered.append(chain)
        ordered.extend(sorted(linked[chain.id], key=_name_key))

    roots = [chain for chain in chains if chain.relay_id not in chain_ids]
    roots.sort(key=lambda chain: (chain.is_testnet, RELAY_PRIORITY.get(chain.id, len(RELAY_PRIORITY)), _name_key(chain)))
    for root in roots:
        add_chain(root)
        for parachain in sorted(parachains[root.id], key=lambda chain: (chain.is_testnet, _name_key(chain))):
            add_chain(parachain)

    standalone = [network for network in evm_networks if network.substrate_chain_id not in chain_ids]
    ordered.extend(sorted(standalone, key=lambda network: (network.is_testnet, _name_key(network))))
    return ordered


async def update_sort_indexes(ctx: "PipelineContext"):
    """Assign 1-based sort indexes across all chains and evm networks in one batch."""
    chains = await ctx.store.find(Chain)
    evm_networks = await ctx.store.find(EvmNetwork)

    ordered = ctx.sort(chains, evm_networks)
    for index, entity in enumerate(ordered, start=1):
        entity.sort_index = index

    await ctx.store.save(ordered)


async def update_tokens_testnet_field(ctx: "PipelineContext"):
    """
    A token is a testnet token iff every chain / evm network referencing it is one.

    References are the token's anchor plus every chain or network which uses
    it as its native token. A token nothing references counts as a testnet
    token, which keeps it out of price refreshes.
    """
    chains = {chain.id: chain for chain in await ctx.store.find(Chain)}
    evm_networks = {network.id: network for network in await ctx.store.find(EvmNetwork)}

    native_to: Dict[str, List[bool]] = defaultdict(list)
    for entity in [*chains.values(), *evm_networks.values()]:
        if entity.native_token_id is not None:
            native_to[entity.native_token_id].append(entity.is_testnet)

    tokens: List[TokenBase] = await ctx.store.find(TokenBase)
    for token in tokens:
        chain_id, evm_network_id = token_anchor(token)
        flags = list(native_to.get(token.id, []))
        if chain_id in chains:
            flags.append(chains[chain_id].is_testnet)
        if evm_network_id in evm_networks:
            flags.append(evm_networks[evm_network_id].is_testnet)
        token.is_testnet = all(flags)

    await ctx.store.save(tokens)
