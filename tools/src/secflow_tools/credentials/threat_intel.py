"""
Threat-intelligence API credentials.

Contains credentials for the inline reputation lookup components.
"""

from .base import CredentialSpec

THREAT_INTEL_CREDENTIALS = {
    "virustotal": CredentialSpec(
        env_var="VIRUSTOTAL_API_KEY",
        components=["secflow.virustotal.lookup"],
        required=True,
        help_url="https://www.virustotal.com/gui/my-apikey",
        description="VirusTotal API key for IP, domain, file hash and URL reputation",
        api_key_instructions="""To get a VirusTotal API key:
1. Sign up or log in at https://www.virustotal.com/
2. Open your profile menu and choose "API key"
3. Copy the key

Note: the public API is limited to 4 requests/minute and 500/day.""",
        health_check_endpoint="https://www.virustotal.com/api/v3/users/me",
    ),
    "abuseipdb": CredentialSpec(
        env_var="ABUSEIPDB_API_KEY",
        components=["secflow.abuseipdb.check"],
        required=True,
        help_url="https://www.abuseipdb.com/account/api",
        description="AbuseIPDB API key for IP abuse confidence scores",
        api_key_instructions="""To get an AbuseIPDB API key:
1. Create an account at https://www.abuseipdb.com/register
2. Go to Account > API
3. Click "Create Key" and copy it""",
        health_check_endpoint="https://api.abuseipdb.com/api/v2/check?ipAddress=127.0.0.1",
    ),
}
