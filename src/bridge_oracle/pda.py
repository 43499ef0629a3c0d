"""Program-derived addresses of the Solana bridge program."""

from solders.pubkey import Pubkey

OUTPUT_ROOT_SEED = b"output_root"
MESSENGER_STATE_SEED = b"messenger_state"
INCOMING_MESSAGE_SEED = b"incoming_message"
BRIDGE_CPI_AUTHORITY_SEED = b"bridge_cpi_authority"
SOL_VAULT_SEED = b"sol_vault"
TOKEN_VAULT_SEED = b"token_vault"
WRAPPED_TOKEN_SEED = b"wrapped_token"
BRIDGE_SEED = b"bridge"

MESSENGER_STATE_VERSION = 1


class ProgramAddresses:
    """Derives the bridge program's accounts from their seeds."""

    def __init__(self, program_id: Pubkey):
        self.program_id = program_id

    def _derive(self, *seeds: bytes) -> Pubkey:
        address, _ = Pubkey.find_program_address(list(seeds), self.program_id)
        return address

    def output_root(self, block_number: int) -> Pubkey:
        return self._derive(OUTPUT_ROOT_SEED, block_number.to_bytes(8, "little"))

    def messenger_state(self, version: int = MESSENGER_STATE_VERSION) -> Pubkey:
        return self._derive(MESSENGER_STATE_SEED, bytes([version]))

    def incoming_message(self, message_hash: bytes) -> Pubkey:
        return self._derive(INCOMING_MESSAGE_SEED, bytes(message_hash))

    def bridge_cpi_authority(self, sender: bytes) -> Pubkey:
        """Authority the program signs carried instructions with, one per EVM sender."""
        return self._derive(BRIDGE_CPI_AUTHORITY_SEED, bytes(sender))

    def sol_vault(self, remote_token: bytes) -> Pubkey:
        return self._derive(SOL_VAULT_SEED, bytes(remote_token))

    def token_vault(self, local_token: Pubkey, remote_token: bytes) -> Pubkey:
        return self._derive(TOKEN_VAULT_SEED, bytes(local_token), bytes(remote_token))

    def wrapped_token(self, decimals: int, metadata_hash: bytes) -> Pubkey:
        return self._derive(WRAPPED_TOKEN_SEED, decimals.to_bytes(1, "little"), bytes(metadata_hash))

    def bridge(self) -> Pubkey:
        return self._derive(BRIDGE_SEED)
