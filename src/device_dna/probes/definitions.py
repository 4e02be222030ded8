"""
PowerShell probe definitions.

Each probe is a read-only script that prints one JSON document. Scripts
catch their own errors and report them in an "Errors" array so that a
partial result still parses.
"""

from dataclasses import dataclass
from typing import Dict, List

from .._types import CollectionCategory


@dataclass(frozen=True)
class Probe:
    """A read-only PowerShell probe."""
    id: str
    name: str
    category: CollectionCategory
    script: str
    timeout_seconds: int = 120


# =============================================================================
# PROBE-DEV-REG: device registration (dsregcmd)
# =============================================================================

PROBE_DEVICE_REGISTRATION = Probe(
    id="PROBE-DEV-REG",
    name="Device registration state",
    category=CollectionCategory.DEVICE,
    timeout_seconds=60,
    script=r'''
$Result = @{
    ComputerName = $env:COMPUTERNAME
    Domain = $null
    AzureAdJoined = $null
    DomainJoined = $null
    EnterpriseJoined = $null
    DeviceId = $null
    TenantId = $null
    TenantName = $null
    Errors = @()
}

try {
    $Result.Domain = (Get-CimInstance -ClassName Win32_ComputerSystem).Domain
} catch {
    $Result.Errors += "Win32_ComputerSystem: $($_.Exception.Message)"
}

try {
    $Lines = & dsregcmd.exe /status 2>$null
    foreach ($Line in $Lines) {
        if ($Line -match '^\s*(\w+)\s*:\s*(.*?)\s*$') {
            $Key = $Matches[1]
            $Value = $Matches[2]
            if ($Result.ContainsKey($Key) -and $null -eq $Result[$Key]) {
                $Result[$Key] = $Value
            }
        }
    }
} catch {
    $Result.Errors += "dsregcmd: $($_.Exception.Message)"
}

$Result | ConvertTo-Json -Depth 3
''',
)


# =============================================================================
# PROBE-DEV-INV: OS and hardware inventory (CIM)
# =============================================================================

PROBE_DEVICE_INVENTORY = Probe(
    id="PROBE-DEV-INV",
    name="Device inventory",
    category=CollectionCategory.DEVICE,
    script=r'''
$Result = @{ Errors = @() }

try {
    $Os = Get-CimInstance -ClassName Win32_OperatingSystem
    $Result.OperatingSystem = $Os.Caption
    $Result.OSVersion = $Os.Version
    $Result.OSBuild = $Os.BuildNumber
    $Result.LastBootTime = if ($Os.LastBootUpTime) { $Os.LastBootUpTime.ToUniversalTime().ToString("o") } else { $null }
} catch {
    $Result.Errors += "Win32_OperatingSystem: $($_.Exception.Message)"
}

try {
    $Cs = Get-CimInstance -ClassName Win32_ComputerSystem
    $Result.Manufacturer = $Cs.Manufacturer
    $Result.Model = $Cs.Model
    $Result.TotalMemoryGB = [math]::Round($Cs.TotalPhysicalMemory / 1GB, 1)
} catch {
    $Result.Errors += "Win32_ComputerSystem: $($_.Exception.Message)"
}

try {
    $Result.SerialNumber = (Get-CimInstance -ClassName Win32_BIOS).SerialNumber
} catch {
    $Result.Errors += "Win32_BIOS: $($_.Exception.Message)"
}

try {
    $Cv = Get-ItemProperty 'HKLM:\SOFTWARE\Microsoft\Windows NT\CurrentVersion' -ErrorAction Stop
    $Result.DisplayVersion = $Cv.DisplayVersion
    $Result.UBR = $Cv.UBR
} catch {
    $Result.Errors += "CurrentVersion: $($_.Exception.Message)"
}

$Result | ConvertTo-Json -Depth 3
''',
)


# =============================================================================
# PROBE-WU-POLICY: Windows Update policy registry
# =============================================================================

PROBE_WU_POLICY = Probe(
    id="PROBE-WU-POLICY",
    name="Windows Update policy registry",
    category=CollectionCategory.WINDOWS_UPDATE,
    timeout_seconds=60,
    script=r'''
$Keys = [ordered]@{
    windows_update = 'HKLM:\SOFTWARE\Policies\Microsoft\Windows\WindowsUpdate'
    windows_update_au = 'HKLM:\SOFTWARE\Policies\Microsoft\Windows\WindowsUpdate\AU'
    mdm_update = 'HKLM:\SOFTWARE\Microsoft\PolicyManager\current\device\Update'
    delivery_optimization = 'HKLM:\SOFTWARE\Policies\Microsoft\Windows\DeliveryOptimization'
}

$Result = @{ Errors = @() }
foreach ($Name in $Keys.Keys) {
    $Values = @{}
    if (Test-Path $Keys[$Name]) {
        try {
            $Item = Get-Item -Path $Keys[$Name] -ErrorAction Stop
            foreach ($ValueName in $Item.GetValueNames()) {
                if ($ValueName) { $Values[$ValueName] = $Item.GetValue($ValueName) }
            }
        } catch {
            $Result.Errors += "$($Keys[$Name]): $($_.Exception.Message)"
        }
    }
    $Result[$Name] = $Values
}

$Result | ConvertTo-Json -Depth 4
''',
)


# =============================================================================
# PROBE-WU-STATUS: service, reboot, scan, pending updates, history (WU COM)
# =============================================================================

PROBE_WU_STATUS = Probe(
    id="PROBE-WU-STATUS",
    name="Windows Update status",
    category=CollectionCategory.WINDOWS_UPDATE,
    timeout_seconds=300,
    script=r'''
$Result = @{
    ServiceState = 'Unknown'
    RebootPending = $false
    LastScanTime = $null
    LastScanSuccess = $null
    PendingUpdates = @()
    UpdateHistory = @()
    Errors = @()
}

try {
    $Result.ServiceState = (Get-Service -Name wuauserv -ErrorAction Stop).Status.ToString()
} catch {
    $Result.Errors += "wuauserv: $($_.Exception.Message)"
}

$RebootKeys = @(
    'HKLM:\SOFTWARE\Microsoft\Windows\CurrentVersion\WindowsUpdate\Auto Update\RebootRequired',
    'HKLM:\SOFTWARE\Microsoft\Windows\CurrentVersion\Component Based Servicing\RebootPending'
)
$Result.RebootPending = [bool]($RebootKeys | Where-Object { Test-Path $_ })

try {
    $AutoUpdate = New-Object -ComObject Microsoft.Update.AutoUpdate
    $Results = $AutoUpdate.Results
    if ($Results.LastSearchSuccessDate) {
        $Result.LastScanSuccess = ([datetime]$Results.LastSearchSuccessDate).ToUniversalTime().ToString("o")
    }
} catch {
    $Result.Errors += "AutoUpdate: $($_.Exception.Message)"
}

try {
    $Session = New-Object -ComObject Microsoft.Update.Session
    $Searcher = $Session.CreateUpdateSearcher()
    $Search = $Searcher.Search("IsInstalled=0 and Type='Software' and IsHidden=0")
    $Result.PendingUpdates = @($Search.Updates | ForEach-Object {
        @{
            Title = $_.Title
            KBArticleIDs = @($_.KBArticleIDs)
            MsrcSeverity = $_.MsrcSeverity
            IsDownloaded = $_.IsDownloaded
        }
    })

    $Count = $Searcher.GetTotalHistoryCount()
    if ($Count -gt 0) {
        $History = $Searcher.QueryHistory(0, [math]::Min($Count, 50))
        $Result.UpdateHistory = @($History | Where-Object { $_.Title } | ForEach-Object {
            @{
                Title = $_.Title
                Date = $_.Date.ToUniversalTime().ToString("o")
                Operation = $_.Operation
                Result = $_.ResultCode
                HResult = $_.HResult
            }
        })
        $Latest = $History | Sort-Object Date -Descending | Select-Object -First 1
        if ($Latest) { $Result.LastScanTime = $Latest.Date.ToUniversalTime().ToString("o") }
    }
} catch {
    $Result.Errors += "Update search: $($_.Exception.Message)"
}

$Result | ConvertTo-Json -Depth 4
''',
)


# =============================================================================
# PROBE-SCCM-CLIENT: ConfigMgr client presence
# =============================================================================

PROBE_SCCM_CLIENT = Probe(
    id="PROBE-SCCM-CLIENT",
    name="ConfigMgr client presence",
    category=CollectionCategory.SCCM,
    timeout_seconds=60,
    script=r'''
$Result = @{
    ServiceInstalled = $false
    ServiceState = $null
    NamespacePresent = $false
    ClientVersion = $null
    SiteCode = $null
    ManagementPoint = $null
    Errors = @()
}

$Service = Get-Service -Name CcmExec -ErrorAction SilentlyContinue
if ($Service) {
    $Result.ServiceInstalled = $true
    $Result.ServiceState = $Service.Status.ToString()
}

try {
    $Ns = Get-CimInstance -Namespace root -ClassName __Namespace -Filter "Name='ccm'" -ErrorAction Stop
    $Result.NamespacePresent = [bool]$Ns
} catch {
    $Result.Errors += "root\ccm: $($_.Exception.Message)"
}

if ($Result.NamespacePresent) {
    try {
        $Result.ClientVersion = (Get-CimInstance -Namespace root\ccm -ClassName SMS_Client -ErrorAction Stop).ClientVersion
    } catch {
        $Result.Errors += "SMS_Client: $($_.Exception.Message)"
    }
    try {
        $Authority = Get-CimInstance -Namespace root\ccm -ClassName SMS_Authority -ErrorAction Stop | Select-Object -First 1
        if ($Authority) {
            $Result.SiteCode = ($Authority.Name -replace '^SMS:', '')
            $Result.ManagementPoint = $Authority.CurrentManagementPoint
        }
    } catch {
        $Result.Errors += "SMS_Authority: $($_.Exception.Message)"
    }
}

$Result | ConvertTo-Json -Depth 3
''',
)


# =============================================================================
# PROBE-SCCM-DETAILS: applications, baselines, updates, client settings
# =============================================================================

PROBE_SCCM_DETAILS = Probe(
    id="PROBE-SCCM-DETAILS",
    name="ConfigMgr deployments",
    category=CollectionCategory.SCCM,
    timeout_seconds=180,
    script=r'''
$Result = @{
    Applications = @()
    Baselines = @()
    SoftwareUpdates = @()
    ClientSettings = @()
    Errors = @()
}

try {
    $Result.Applications = @(Get-CimInstance -Namespace root\ccm\ClientSDK -ClassName CCM_Application -ErrorAction Stop | ForEach-Object {
        @{
            Name = $_.Name
            Publisher = $_.Publisher
            Version = $_.SoftwareVersion
            InstallState = $_.InstallState
            EvaluationState = $_.EvaluationState
            IsRequired = ($_.ResolvedState -eq 'Installed' -or $_.IsMachineTarget)
        }
    })
} catch {
    $Result.Errors += "CCM_Application: $($_.Exception.Message)"
}

try {
    $Result.Baselines = @(Get-CimInstance -Namespace root\ccm\dcm -ClassName SMS_DesiredConfiguration -ErrorAction Stop | ForEach-Object {
        @{
            Name = $_.DisplayName
            Version = $_.Version
            ComplianceState = $_.LastComplianceStatus
            LastEvaluated = if ($_.LastEvalTime) { ([datetime]$_.LastEvalTime).ToUniversalTime().ToString("o") } else { $null }
        }
    })
} catch {
    $Result.Errors += "SMS_DesiredConfiguration: $($_.Exception.Message)"
}

try {
    $Result.SoftwareUpdates = @(Get-CimInstance -Namespace root\ccm\ClientSDK -ClassName CCM_SoftwareUpdate -ErrorAction Stop | ForEach-Object {
        @{
            ArticleID = $_.ArticleID
            Name = $_.Name
            Deadline = if ($_.Deadline) { ([datetime]$_.Deadline).ToUniversalTime().ToString("o") } else { $null }
            EvaluationState = $_.EvaluationState
            IsRequired = ($_.ComplianceState -eq 0)
        }
    })
} catch {
    $Result.Errors += "CCM_SoftwareUpdate: $($_.Exception.Message)"
}

$SettingClasses = @{
    'Software Updates' = 'CCM_SoftwareUpdatesClientConfig'
    'Client Policy' = 'CCM_ClientAgentConfig'
    'Computer Restart' = 'CCM_RebootSettings'
}
foreach ($Category in $SettingClasses.Keys) {
    try {
        $Config = Get-CimInstance -Namespace root\ccm\Policy\Machine\ActualConfig -ClassName $SettingClasses[$Category] -ErrorAction Stop | Select-Object -First 1
        if ($Config) {
            $Settings = @{}
            foreach ($Prop in $Config.CimInstanceProperties) {
                if ($Prop.Value -ne $null -and $Prop.Name -notmatch '^(PolicyID|PolicySource|PolicyVersion|PolicyRuleID|PolicyInstanceID|SiteSettingsKey)$') {
                    $Settings[$Prop.Name] = "$($Prop.Value)"
                }
            }
            $Result.ClientSettings += @{ Category = $Category; Settings = $Settings }
        }
    } catch {
        $Result.Errors += "$($SettingClasses[$Category]): $($_.Exception.Message)"
    }
}

$Result | ConvertTo-Json -Depth 5
''',
)


# =============================================================================
# PROBE-GPO: applied Group Policy objects
# =============================================================================

PROBE_GROUP_POLICY = Probe(
    id="PROBE-GPO",
    name="Applied Group Policy",
    category=CollectionCategory.GROUP_POLICY,
    timeout_seconds=180,
    script=r'''
$Result = @{
    ComputerScope = @{ Gpos = @(); Settings = @() }
    UserScope = @{ Gpos = @(); Settings = @() }
    Errors = @()
}

$Root = 'HKLM:\SOFTWARE\Microsoft\Windows\CurrentVersion\Group Policy\State\Machine\GPO-List'
if (Test-Path $Root) {
    $Result.ComputerScope.Gpos = @(Get-ChildItem $Root | ForEach-Object {
        $Gpo = Get-ItemProperty $_.PSPath
        @{
            Name = $Gpo.DisplayName
            Status = if ($Gpo.Options -band 1) { 'Disabled' } else { 'Applied' }
            LinkLocation = $Gpo.Link
            Id = $Gpo.GPOName
        }
    })
}

$Xml = Join-Path $env:TEMP ("devicedna-gpresult-{0}.xml" -f [guid]::NewGuid())
try {
    & gpresult.exe /scope computer /x $Xml /f 2>$null | Out-Null
    if (Test-Path $Xml) {
        [xml]$Report = Get-Content $Xml -Raw
        $Policies = Select-Xml -Xml $Report -XPath "//*[local-name()='Policy']"
        $Result.ComputerScope.Settings = @($Policies | ForEach-Object {
            $Node = $_.Node
            @{
                Name = $Node.Name
                Value = $Node.State
                SourceGPO = $Node.GPO.Name.'#text'
                KeyPath = $Node.Category
            }
        })
    }
} catch {
    $Result.Errors += "gpresult: $($_.Exception.Message)"
} finally {
    Remove-Item $Xml -ErrorAction SilentlyContinue
}

$Result | ConvertTo-Json -Depth 5
''',
)


ALL_PROBES: List[Probe] = [
    PROBE_DEVICE_REGISTRATION,
    PROBE_DEVICE_INVENTORY,
    PROBE_WU_POLICY,
    PROBE_WU_STATUS,
    PROBE_SCCM_CLIENT,
    PROBE_SCCM_DETAILS,
    PROBE_GROUP_POLICY,
]

PROBES: Dict[str, Probe] = {probe.id: probe for probe in ALL_PROBES}


def get_probe(probe_id: str) -> Probe:
    """Get a probe by id (KeyError if unknown)."""
    return PROBES[probe_id]


def probes_for(category: CollectionCategory) -> List[Probe]:
    return [probe for probe in ALL_PROBES if probe.category == category]
